from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal

import structlog

from intake.remote import (
    RemoteNetworkError,
    RemoteOk,
    RemoteOnboardingClient,
    RemoteResult,
    RemoteValidationError,
)
from intake.sections import sections_from_profile, sections_from_remote, to_remote_payload
from intake.state import CacheEntry, IdentityScope, OnboardingRecord
from intake.storage import LocalCache

logger = structlog.get_logger()

LoadSource = Literal["cache", "remote", "prefill", "empty"]


@dataclass(frozen=True)
class LoadResult:
    record: OnboardingRecord
    source: LoadSource


def _no_identity(operation: str, scope: IdentityScope) -> RemoteValidationError:
    logger.warning("operation dropped outside a real identity", operation=operation, scope=str(scope))
    return RemoteValidationError(message=f"{operation} requires an authenticated user")


class PersistenceCoordinator:
    """Keeps the local cache and the backend record in step.

    Local writes are synchronous and always happen first; remote writes are
    best-effort, never retried here, and their responses are never applied
    back onto local state.
    """

    def __init__(self, cache: LocalCache, remote: RemoteOnboardingClient) -> None:
        self.cache = cache
        self.remote = remote
        self._issued: dict[str, int] = {}

    async def load(self, scope: IdentityScope) -> LoadResult:
        if not scope.is_real:
            _no_identity("load", scope)
            return LoadResult(OnboardingRecord(), "empty")

        entry = self._read_local(scope)
        if entry is not None:
            return LoadResult(entry.record.without_completion(), "cache")

        fetched = await self.remote.get_onboarding_data()
        if isinstance(fetched, RemoteOk) and isinstance(fetched.data, dict):
            sections = sections_from_remote(fetched.data)
            if sections:
                return LoadResult(OnboardingRecord(sections=sections), "remote")
        elif not fetched.ok:
            logger.warning("remote onboarding fetch failed", scope=str(scope), error=fetched.message)

        sections = await self._prefill()
        if sections:
            return LoadResult(OnboardingRecord(sections=sections), "prefill")
        return LoadResult(OnboardingRecord(), "empty")

    def save_local(
        self,
        scope: IdentityScope,
        record: OnboardingRecord,
        *,
        completed_steps: list[int] | None = None,
        progress: float = 0.0,
    ) -> bool:
        if not scope.is_real:
            _no_identity("save_local", scope)
            return False
        try:
            self.cache.store(scope, record, completed_steps=completed_steps, progress=progress)
        except Exception as exc:
            logger.error("local cache write failed", scope=str(scope), error=str(exc))
            return False
        return True

    async def push_remote(
        self,
        scope: IdentityScope,
        record: OnboardingRecord,
        *,
        token: str | None = None,
    ) -> RemoteResult:
        """Send ``record`` to the backend as ``scope``.

        ``token`` pins the credentials captured when the write was queued, so a
        write that starts after an identity change still goes out as its owner.
        """
        if not scope.is_real:
            return _no_identity("push_remote", scope)
        if not record.sections:
            return RemoteOk(None)

        key = str(scope)
        seq = self._issued.get(key, 0) + 1
        self._issued[key] = seq

        result = await self.remote.save_onboarding_data(to_remote_payload(record.sections), token=token)
        if seq < self._issued.get(key, 0):
            logger.debug("remote save superseded", scope=key, seq=seq, latest=self._issued[key])
        if isinstance(result, RemoteValidationError):
            logger.warning("remote save rejected", scope=key, error=result.message, fields=result.field_errors())
        elif isinstance(result, RemoteNetworkError):
            logger.warning("remote save failed", scope=key, error=result.message)
        return result

    async def save(
        self,
        scope: IdentityScope,
        record: OnboardingRecord,
        *,
        completed_steps: list[int] | None = None,
        progress: float = 0.0,
    ) -> RemoteResult:
        self.save_local(scope, record, completed_steps=completed_steps, progress=progress)
        return await self.push_remote(scope, record)

    async def finalize(self, scope: IdentityScope, record: OnboardingRecord) -> RemoteResult:
        if not scope.is_real:
            return _no_identity("finalize", scope)

        saved = await self.remote.save_onboarding_data(to_remote_payload(record.sections, complete=True))
        if not saved.ok:
            logger.error("final save failed", scope=str(scope), error=saved.message)
            return saved
        completed = await self.remote.complete_onboarding()
        if not completed.ok:
            logger.error("mark complete failed", scope=str(scope), error=completed.message)
        return completed

    async def remote_status(self, scope: IdentityScope) -> RemoteResult:
        if not scope.is_real:
            return _no_identity("remote_status", scope)
        return await self.remote.get_onboarding_status()

    def purge(self, scope: IdentityScope) -> None:
        if not scope.is_real:
            _no_identity("purge", scope)
            return
        try:
            self.cache.delete(scope)
        except Exception as exc:
            logger.error("local cache purge failed", scope=str(scope), error=str(exc))

    def adopt_placeholder(self, scope: IdentityScope) -> bool:
        """Move placeholder-cached answers under ``scope`` if it has none.

        Existing real data always wins. Placeholder entries are swept either
        way.
        """
        if not scope.is_real:
            _no_identity("adopt_placeholder", scope)
            return False
        migrated = False
        try:
            if self.cache.load(scope) is None:
                candidates = self.cache.placeholder_entries()
                if candidates:
                    _, freshest = max(candidates, key=lambda kv: kv[1].timestamp)
                    record = freshest.record.without_completion()
                    self.cache.store(scope, record, completed_steps=[], progress=0.0)
                    migrated = True
                    logger.info("migrated placeholder onboarding data", scope=str(scope))
        except Exception as exc:
            logger.error("placeholder migration failed", scope=str(scope), error=str(exc))
        self.sweep_placeholders()
        return migrated

    def sweep_placeholders(self) -> int:
        try:
            removed = self.cache.delete_placeholders()
        except Exception as exc:
            logger.error("placeholder sweep failed", error=str(exc))
            return 0
        if removed:
            logger.info("swept placeholder cache entries", count=removed)
        return removed

    def _read_local(self, scope: IdentityScope) -> CacheEntry | None:
        try:
            return self.cache.load(scope)
        except Exception as exc:
            logger.error("local cache read failed", scope=str(scope), error=str(exc))
            return None

    async def _prefill(self) -> dict:
        profile, babies = await asyncio.gather(
            self.remote.get_user_profile(),
            self.remote.get_user_babies(),
        )
        if not isinstance(profile, RemoteOk) or not isinstance(profile.data, dict):
            return {}
        baby_list = babies.data if isinstance(babies, RemoteOk) and isinstance(babies.data, list) else []
        try:
            return sections_from_profile(profile.data, baby_list)
        except ValueError as exc:
            logger.warning("profile prefill skipped", error=str(exc)[:200])
            return {}
