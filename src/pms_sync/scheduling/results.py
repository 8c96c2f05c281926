"""Run results and status snapshots for the sync services."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from ..utils import utc_now


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class RunSummary(Protocol):
    @property
    def processed(self) -> int: ...

    @property
    def errors(self) -> list[str]: ...

    def to_dict(self) -> dict[str, Any]: ...


@dataclass
class ShareClassResult:
    """Per-share-class line of a run summary."""

    share_class_name: str
    success: bool
    count: int = 0
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "share_class_name": self.share_class_name,
            "success": self.success,
            "count": self.count,
        }
        if self.error:
            result["error"] = self.error
        if self.details:
            result["details"] = self.details
        return result


def _share_class_errors(results: list[ShareClassResult]) -> list[str]:
    return [f"{r.share_class_name}: {r.error}" for r in results if not r.success]


@dataclass
class TransferSyncSummary:
    share_classes_processed: int = 0
    total_transfers: int = 0
    deposits: int = 0
    withdrawals: int = 0
    deposit_date_range: Optional[tuple[datetime, datetime]] = None
    withdrawal_date_range: Optional[tuple[datetime, datetime]] = None
    results: list[ShareClassResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.total_transfers

    @property
    def errors(self) -> list[str]:
        return _share_class_errors(self.results)

    def to_dict(self) -> dict[str, Any]:
        def _range(value: Optional[tuple[datetime, datetime]]) -> Optional[dict[str, str]]:
            if value is None:
                return None
            return {"start": value[0].isoformat(), "end": value[1].isoformat()}

        return {
            "share_classes_processed": self.share_classes_processed,
            "total_transfers": self.total_transfers,
            "deposits": self.deposits,
            "withdrawals": self.withdrawals,
            "date_range": {
                "deposits": _range(self.deposit_date_range),
                "withdrawals": _range(self.withdrawal_date_range),
            },
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class AccountSyncSummary:
    share_classes_processed: int = 0
    total_accounts: int = 0
    results: list[ShareClassResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.total_accounts

    @property
    def errors(self) -> list[str]:
        return _share_class_errors(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "share_classes_processed": self.share_classes_processed,
            "total_accounts": self.total_accounts,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class CurrencySyncSummary:
    currencies: list[str]
    exchange: str
    backfill_needed: bool = False
    backfill: Optional[dict[str, Any]] = None
    daily_rates: Optional[dict[str, Any]] = None
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        total = 0
        if self.backfill:
            total += self.backfill.get("total_rates_stored", 0)
        if self.daily_rates:
            total += self.daily_rates.get("rates_stored", 0)
        return total

    def to_dict(self) -> dict[str, Any]:
        return {
            "backfill_needed": self.backfill_needed,
            "backfill": self.backfill,
            "daily_rates": self.daily_rates,
            "currencies": self.currencies,
            "exchange": self.exchange,
            "errors": self.errors,
        }


@dataclass
class SyncResult:
    """Outcome of one sync run (or a rejected trigger)."""

    success: bool
    message: str
    job: str
    run_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    duration_ms: Optional[int] = None
    summary: Optional[Any] = None
    error: Optional[str] = None
    skipped: bool = False

    @classmethod
    def already_running(cls, job: str, message: str) -> "SyncResult":
        return cls(success=False, message=message, job=job, skipped=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "job": self.job,
            "run_id": self.run_id,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
            "summary": self.summary.to_dict() if self.summary is not None else None,
            "error": self.error,
            "skipped": self.skipped,
        }


@dataclass
class ScheduleInfo:
    job_id: str
    enabled: bool
    cron: str
    timezone: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "enabled": self.enabled,
            "cron": self.cron,
            "timezone": self.timezone,
            "next_run": _iso(self.next_run),
            "last_run": _iso(self.last_run),
        }


@dataclass
class LastRunResult:
    success: bool
    processed: int
    errors: list[str]
    duration_ms: Optional[int]
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "processed": self.processed,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class JobStatus:
    is_running: bool
    enabled: bool
    cron: str
    last_run_time: Optional[datetime] = None
    next_run_time: Optional[datetime] = None
    last_run_result: Optional[LastRunResult] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_run_time": _iso(self.last_run_time),
            "next_run_time": _iso(self.next_run_time),
            "last_run_result": self.last_run_result.to_dict() if self.last_run_result else None,
            "schedule": {"enabled": self.enabled, "cron": self.cron},
        }
