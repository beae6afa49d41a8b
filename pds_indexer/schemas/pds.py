from datetime import datetime
from typing import Literal

from pydantic import BaseModel

DiscoverySource = Literal[
    "user-registration",
    "identity-enumeration",
    "relay-listing",
    "did-mention",
    "manual",
]
PDSStatus = Literal["pending", "active", "no-records", "unreachable"]


class PDSEntry(BaseModel):
    host_url: str
    discovered_at: datetime
    discovery_source: DiscoverySource
    status: PDSStatus = "pending"
    last_scan_at: datetime | None = None
    next_scan_at: datetime | None = None
    scan_started_at: datetime | None = None
    claimed_until: datetime | None = None
    has_records: bool | None = None
    record_count: int = 0
    consecutive_failures: int = 0
    scan_priority: int = 0
    last_error: str | None = None
    is_relay_connected: bool = False
    updated_at: datetime | None = None


class ScanResult(BaseModel):
    has_records: bool
    record_count: int = 0
    next_scan_hours: float | None = None
    skipped_records: int = 0
    repos_scanned: int = 0


class RegistryStats(BaseModel):
    total: int = 0
    active: int = 0
    with_records: int = 0
    unreachable: int = 0
    relay_connected: int = 0
    quarantined: int = 0


class RegisterPDSRequest(BaseModel):
    host_url: str
    source: DiscoverySource = "manual"
    priority: int | None = None


class HostRequest(BaseModel):
    host_url: str


class ConnectivityRefreshOut(BaseModel):
    updated: int


class ScanHostOut(BaseModel):
    host_url: str
    result: ScanResult | None = None
    error: str | None = None
