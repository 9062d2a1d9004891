"""JSON-backed identity bindings, one set of user records per season."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterable
from enum import Enum
from pathlib import Path

from .models import Season, UserRecord

log = logging.getLogger("access.storage")


class BindResult(str, Enum):
    OK = "ok"
    ALREADY_BOUND = "already_bound"
    # the account already verified as someone else this season
    ACCOUNT_TAKEN = "account_taken"
    NOT_FOUND = "not_found"


class IdentityStore:
    """Persist :class:`UserRecord` bindings keyed by season and identity.

    Data is persisted to a single JSON file on every mutation which keeps the
    implementation simple while providing durability across process
    restarts. :meth:`bind` is the only path that writes an account id and is
    a compare-and-set guarded by a lock: of several concurrent binds for one
    record exactly one succeeds, and an account holds at most one record
    per season.

    Accounts whose record disappears from the configuration are remembered
    as *departed* until their season roles have been revoked.
    """

    def __init__(self, path: Path) -> None:
        """Initialise storage using JSON file at ``path``."""
        self.path = Path(path)
        self._records: dict[str, dict[str, UserRecord]] = {}
        self._departed: dict[str, set[int]] = {}
        self._lock = threading.Lock()
        if self.path.exists():
            self._load()
        else:
            self._save()

    # ------------------------------------------------------------------
    # Internal helpers
    def _load(self) -> None:
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self._records = {
            season_id: {
                item["external_id"]: UserRecord(**item) for item in items
            }
            for season_id, items in data.get("seasons", {}).items()
        }
        self._departed = {
            season_id: set(accounts)
            for season_id, accounts in data.get("departed", {}).items()
        }

    def _save(self) -> None:
        data = {
            "seasons": {
                season_id: [r.model_dump(mode="json") for r in records.values()]
                for season_id, records in self._records.items()
            },
            "departed": {
                season_id: sorted(accounts)
                for season_id, accounts in self._departed.items()
                if accounts
            },
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)

    def _bound_to(self, season_id: str, platform_account_id: int) -> UserRecord | None:
        return next(
            (
                r
                for r in self._records.get(season_id, {}).values()
                if r.platform_account_id == platform_account_id
            ),
            None,
        )

    # ------------------------------------------------------------------
    # Season seeding
    def sync_season(self, season: Season) -> int:
        """Make the stored records for ``season`` match its configured users.

        Display names and extra roles follow the configuration; the bound
        account id, once written, is carried over untouched. Records whose
        user is no longer configured are dropped, and their bound account is
        marked departed. Returns the number of records added, changed or
        removed.
        """
        changed = 0
        with self._lock:
            records = self._records.setdefault(season.id, {})
            configured = {user.external_id for user in season.users}
            for external_id in [e for e in records if e not in configured]:
                removed = records.pop(external_id)
                if removed.platform_account_id is not None:
                    self._departed.setdefault(season.id, set()).add(
                        removed.platform_account_id
                    )
                log.info("Removed identity %s from season %s", external_id, season.id)
                changed += 1
            for user in season.users:
                existing = records.get(user.external_id)
                account = existing.platform_account_id if existing else None
                updated = user.model_copy(update={"platform_account_id": account})
                if existing != updated:
                    records[user.external_id] = updated
                    changed += 1
            if changed:
                self._save()
        if changed:
            log.info("Synced %d user record(s) for season %s", changed, season.id)
        return changed

    # ------------------------------------------------------------------
    # Lookup and binding
    def resolve(self, season_id: str, external_id: str) -> UserRecord | None:
        """Return the record for ``external_id`` in ``season_id`` if known."""
        return self._records.get(season_id, {}).get(external_id)

    def bind(
        self, season_id: str, external_id: str, platform_account_id: int
    ) -> BindResult:
        """Attach ``platform_account_id`` to a record that has none yet."""
        with self._lock:
            record = self._records.get(season_id, {}).get(external_id)
            if record is None:
                return BindResult.NOT_FOUND
            if record.platform_account_id is not None:
                if record.platform_account_id == platform_account_id:
                    return BindResult.OK
                return BindResult.ALREADY_BOUND
            if self._bound_to(season_id, platform_account_id) is not None:
                return BindResult.ACCOUNT_TAKEN
            self._records[season_id][external_id] = record.model_copy(
                update={"platform_account_id": platform_account_id}
            )
            self._departed.get(season_id, set()).discard(platform_account_id)
            self._save()
        log.info(
            "Bound identity %s in season %s to account %s",
            external_id,
            season_id,
            platform_account_id,
        )
        return BindResult.OK

    def find_by_account(
        self, season_id: str, platform_account_id: int
    ) -> UserRecord | None:
        """Retrieve the record bound to ``platform_account_id``."""
        return self._bound_to(season_id, platform_account_id)

    def bound_records(self, season_id: str) -> Iterable[UserRecord]:
        """Return the records of ``season_id`` that have been verified."""
        return [
            r
            for r in self._records.get(season_id, {}).values()
            if r.platform_account_id is not None
        ]

    # ------------------------------------------------------------------
    # Departed accounts
    def departed_accounts(self, season_id: str) -> list[int]:
        """Accounts that lost their record and may still hold season roles."""
        return sorted(self._departed.get(season_id, ()))

    def clear_departed(self, season_id: str, platform_account_id: int) -> None:
        with self._lock:
            accounts = self._departed.get(season_id)
            if not accounts or platform_account_id not in accounts:
                return
            accounts.discard(platform_account_id)
            self._save()
