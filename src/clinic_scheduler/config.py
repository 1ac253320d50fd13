from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

STORE_BACKENDS = ("dynamodb", "memory")


@dataclass(frozen=True)
class Settings:
    store_backend: str = "dynamodb"
    table_name: str = "bookings"
    lock_table_name: str = "booking-locks"
    patients_table_name: str = "patients"
    doctors_table_name: str = "doctors"
    # How long a per-doctor lease is valid, and how long a writer waits for one
    lock_lease_seconds: int = 10
    lock_wait_seconds: float = 5.0
    # Memory backend only: known patient/doctor ids; empty accepts any id
    patient_ids: tuple[str, ...] = ()
    doctor_ids: tuple[str, ...] = ()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        backend = env.get("STORE_BACKEND", cls.store_backend).lower()
        if backend not in STORE_BACKENDS:
            raise ValueError(f"STORE_BACKEND must be one of {STORE_BACKENDS}, got {backend!r}")

        lease = int(env.get("LOCK_LEASE_SECONDS", cls.lock_lease_seconds))
        wait = float(env.get("LOCK_WAIT_SECONDS", cls.lock_wait_seconds))
        if lease <= 0 or wait < 0:
            raise ValueError("LOCK_LEASE_SECONDS must be positive and LOCK_WAIT_SECONDS >= 0")

        return cls(
            store_backend=backend,
            table_name=env.get("TABLE_NAME", cls.table_name),
            lock_table_name=env.get("LOCK_TABLE_NAME", cls.lock_table_name),
            patients_table_name=env.get("PATIENTS_TABLE_NAME", cls.patients_table_name),
            doctors_table_name=env.get("DOCTORS_TABLE_NAME", cls.doctors_table_name),
            lock_lease_seconds=lease,
            lock_wait_seconds=wait,
            patient_ids=_split_ids(env.get("PATIENT_IDS", "")),
            doctor_ids=_split_ids(env.get("DOCTOR_IDS", "")),
        )


def _split_ids(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())
