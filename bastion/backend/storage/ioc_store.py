"""
storage/ioc_store.py

Local indicator-of-compromise cache consulted by the reputation layer.

The cache is a copy-on-write snapshot: the background refresher (a single
writer) builds a new IOCSnapshot with its upserts/removals applied and
swaps the reference in one assignment. Lookups on the event path read the
current snapshot without locking and never see a half-applied batch.

IP indicators may be single addresses or CIDR networks; networks are kept
in a separate list and matched by containment. Expired IOCs are filtered
at lookup time and physically removed by purge_expired().
"""

from __future__ import annotations

import ipaddress
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from ..errors import ConfigurationError, IntegrityError
from ..intel.models import IOC, normalize_indicator
from ..metrics import METRICS
from ..models import IndicatorType
from .integrity import verify_record

logger = logging.getLogger(__name__)

IOCKey = tuple[IndicatorType, str]


@dataclass(frozen=True)
class IOCSnapshot:
    version: int = 0
    exact: dict[IOCKey, IOC] = field(default_factory=dict)
    networks: tuple[tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, IOC], ...] = ()
    updated_at: float = 0.0

    def __len__(self) -> int:
        return len(self.exact) + len(self.networks)


class IOCCache:
    def __init__(
        self,
        require_checksums: bool = False,
        on_integrity_error: Callable[[str, IntegrityError], None] | None = None,
    ) -> None:
        self.require_checksums = require_checksums
        self.on_integrity_error = on_integrity_error
        self._write_lock = threading.Lock()
        self._snapshot = IOCSnapshot()

    # ------------------------------------------------------------------
    # Read side (lock-free)
    # ------------------------------------------------------------------

    def snapshot(self) -> IOCSnapshot:
        return self._snapshot

    def lookup(
        self,
        kind: IndicatorType,
        value: str,
        now: float | None = None,
        snapshot: IOCSnapshot | None = None,
    ) -> IOC | None:
        """Return the strongest unexpired IOC for one indicator, or None."""
        snap = snapshot or self._snapshot
        now = time.time() if now is None else now
        try:
            key_value = normalize_indicator(kind, value)
        except ValueError:
            return None

        best: IOC | None = None
        ioc = snap.exact.get((kind, key_value))
        if ioc is not None and not ioc.is_expired(now):
            best = ioc

        if kind is IndicatorType.IP and snap.networks:
            addr = ipaddress.ip_address(key_value)
            for network, net_ioc in snap.networks:
                if net_ioc.is_expired(now) or addr.version != network.version:
                    continue
                if addr in network and (best is None or net_ioc.threat_score > best.threat_score):
                    best = net_ioc
        return best

    def lookup_many(
        self,
        indicators: Iterable[tuple[IndicatorType, str]],
        now: float | None = None,
    ) -> list[tuple[str, IOC]]:
        """Match every indicator against one snapshot. Returns (observed, ioc) pairs."""
        snap = self._snapshot
        now = time.time() if now is None else now
        hits: list[tuple[str, IOC]] = []
        for kind, value in indicators:
            ioc = self.lookup(kind, value, now=now, snapshot=snap)
            if ioc is not None:
                hits.append((value, ioc))
        return hits

    def __len__(self) -> int:
        return len(self._snapshot)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def apply(
        self,
        upserts: Iterable[IOC] = (),
        removals: Iterable[IOCKey] = (),
        now: float | None = None,
    ) -> int:
        """
        Apply one batch atomically and return the new snapshot version.

        Upserts replace any IOC with the same key. The whole batch becomes
        visible at once.
        """
        now = time.time() if now is None else now
        with self._write_lock:
            entries = self._entries()
            for key in removals:
                entries.pop(key, None)
            for ioc in upserts:
                entries[ioc.key] = ioc
            self._publish(entries, now)
            return self._snapshot.version

    def purge_expired(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        with self._write_lock:
            entries = self._entries()
            live = {k: v for k, v in entries.items() if not v.is_expired(now)}
            purged = len(entries) - len(live)
            if purged:
                self._publish(live, now)
        if purged:
            logger.info("Purged %d expired IOC(s)", purged)
        return purged

    def load_records(self, records: Iterable[dict[str, Any]]) -> int:
        """Validate and load raw IOC records. Returns the number accepted."""
        accepted: list[IOC] = []
        for record in records:
            if not isinstance(record, Mapping):
                raise ConfigurationError(f"IOC record must be an object, got {type(record).__name__}")
            try:
                verify_record(record, require=self.require_checksums)
            except IntegrityError as exc:
                METRICS.integrity_rejections.inc()
                logger.warning("Rejected IOC record: %s", exc)
                if self.on_integrity_error is not None:
                    self.on_integrity_error(exc.record_id, exc)
                continue
            try:
                accepted.append(IOC.from_dict(record))
            except (KeyError, TypeError, ValueError) as exc:
                raise ConfigurationError(f"invalid IOC record {record!r}: {exc}") from exc
        self.apply(accepted)
        return len(accepted)

    def load_file(self, path: str) -> int:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigurationError(f"IOC file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"IOC file {path} is not valid JSON: {exc}") from exc
        if isinstance(data, dict):
            data = data.get("iocs", [])
        if not isinstance(data, list):
            raise ConfigurationError(f"IOC file {path} must contain a list of IOCs")
        count = self.load_records(data)
        logger.info("Loaded %d IOC(s) from %s", count, path)
        return count

    def stats(self, now: float | None = None) -> dict[str, Any]:
        snap = self._snapshot
        now = time.time() if now is None else now
        all_iocs = list(snap.exact.values()) + [ioc for _, ioc in snap.networks]
        by_type: dict[str, int] = {}
        for ioc in all_iocs:
            by_type[ioc.type.value] = by_type.get(ioc.type.value, 0) + 1
        return {
            "version": snap.version,
            "total": len(all_iocs),
            "expired": sum(1 for ioc in all_iocs if ioc.is_expired(now)),
            "by_type": by_type,
            "updated_at": snap.updated_at,
        }

    # ------------------------------------------------------------------
    # Internals (caller holds _write_lock)
    # ------------------------------------------------------------------

    def _entries(self) -> dict[IOCKey, IOC]:
        snap = self._snapshot
        entries = dict(snap.exact)
        entries.update((ioc.key, ioc) for _, ioc in snap.networks)
        return entries

    def _publish(self, entries: dict[IOCKey, IOC], now: float) -> None:
        exact: dict[IOCKey, IOC] = {}
        networks = []
        for key, ioc in entries.items():
            if ioc.is_network:
                networks.append((ipaddress.ip_network(ioc.value, strict=False), ioc))
            else:
                exact[key] = ioc
        self._snapshot = IOCSnapshot(
            version=self._snapshot.version + 1,
            exact=exact,
            networks=tuple(networks),
            updated_at=now,
        )
