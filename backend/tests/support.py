"""Shared builders and fakes for the coverage test suite."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional, Tuple

from loadcover.core.config import Settings
from loadcover.models.coverage import (
    CarrierCandidate,
    CarrierSource,
    CarrierStatus,
    Load,
    LoadStatus,
    LoyaltyTier,
    OnboardingStatus,
    StaffMember,
)
from loadcover.services.pipeline import CoveragePipeline
from loadcover.services.store import CoverageStore

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
OWNER_ID = "ae-1"


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMessaging:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sms: List[Tuple[str, str]] = []
        self.emails: List[Tuple[str, str, str]] = []

    async def send_sms(self, to: str, body: str) -> bool:
        if self.fail:
            raise RuntimeError("sms provider down")
        self.sms.append((to, body))
        return True

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        if self.fail:
            raise RuntimeError("email provider down")
        self.emails.append((to, subject, html))
        return True


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values = {
        "coverage_db_path": str(tmp_path / "coverage.db"),
        "scheduler_enabled": False,
        "openphone_api_key": "",
        "resend_api_key": "",
        "instance_id": "test-instance",
    }
    values.update(overrides)
    return Settings(**values)


def make_pipeline(
    tmp_path: Path,
    clock: Optional[FakeClock] = None,
    messaging: Optional[FakeMessaging] = None,
    **overrides: Any,
) -> Tuple[CoveragePipeline, FakeMessaging, FakeClock]:
    settings = make_settings(tmp_path, **overrides)
    clock = clock or FakeClock()
    messaging = messaging or FakeMessaging()
    store = CoverageStore(settings.coverage_db_path)
    store.upsert_staff(StaffMember(user_id=OWNER_ID, email="ae@example.com", first_name="Dana"))
    pipeline = CoveragePipeline(store, messaging, clock=clock, settings=settings)
    return pipeline, messaging, clock


def make_load(store: CoverageStore, load_id: str = "LOAD00001", **overrides: Any) -> Load:
    pickup = overrides.pop("pickup_at", NOW + timedelta(days=1))
    values = {
        "load_id": load_id,
        "reference_number": f"REF-{load_id[-5:]}",
        "status": LoadStatus.POSTED,
        "origin_city": "Dallas",
        "origin_state": "TX",
        "dest_city": "Atlanta",
        "dest_state": "GA",
        "equipment_type": "dry_van",
        "pickup_at": pickup,
        "delivery_at": pickup + timedelta(days=2),
        "owner_id": OWNER_ID,
        "customer_rate": 2500.0,
        "carrier_rate": 2000.0,
        "created_at": NOW,
    }
    values.update(overrides)
    return store.upsert_load(Load(**values))


def make_carrier(store: CoverageStore, carrier_id: str, **overrides: Any) -> CarrierCandidate:
    values = {
        "carrier_id": carrier_id,
        "company": f"{carrier_id} Trucking",
        "contact_name": "Sam Driver",
        "phone": None,
        "email": f"{carrier_id.lower()}@example.com",
        "equipment_types": ["dry_van"],
        "tier": LoyaltyTier.NONE,
        "source": CarrierSource.PLATFORM,
        "insurance_expiry": NOW + timedelta(days=365),
        "onboarding_status": OnboardingStatus.APPROVED,
        "status": CarrierStatus.APPROVED,
    }
    values.update(overrides)
    return store.upsert_carrier(CarrierCandidate(**values))
