"""
Per-session permission cache.

Mirrors evaluator decisions for the signed-in user so repeated checks do not
cost a round trip. Entries never expire on a timer; they are dropped by
explicit invalidation (a mutation touching this user or their role) or by
closing the cache at logout.
"""
import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from app.client.api import PermissionsAPI
from app.utils import get_logger


log = get_logger(__name__)

CacheKey = Tuple[str, str]


class PermissionCache:
    """
    Permission decisions for one principal.

    Create one per session and close it on logout:

        async with PermissionCache(api, user_id=42, role="employee") as cache:
            if await cache.check_permission("goals", "delete"):
                ...
            cache.has_permission("goals", "delete")  # True, no request

    Runs on a single event loop; no locking is needed. Concurrent checks for
    the same key share one in-flight request.
    """

    def __init__(self, api: PermissionsAPI, user_id: int, role: str):
        self.api = api
        self.user_id = user_id
        self.role = getattr(role, "value", role)
        self._decisions: Dict[CacheKey, bool] = {}
        self._in_flight: Dict[CacheKey, asyncio.Task] = {}
        # Bumped on every invalidation; results of older requests are discarded
        self._generation = 0
        self._closed = False

    async def __aenter__(self) -> "PermissionCache":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __len__(self) -> int:
        return len(self._decisions)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def has_permission(self, resource: str, action: str) -> Optional[bool]:
        """Cached decision, or None when this key has not been checked yet."""
        return self._decisions.get((resource, action))

    async def check_permission(self, resource: str, action: str) -> bool:
        """
        Authoritative server check that also fills the cache.

        A cached decision is returned without a request. Cancelling the
        caller does not cancel a request other callers are waiting on.
        """
        self._ensure_open()
        key = (resource, action)
        if key in self._decisions:
            return self._decisions[key]

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(key, self._generation))
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return await asyncio.shield(task)

    async def check_permissions(self, checks: Iterable[CacheKey]) -> List[bool]:
        """Check several keys; only the uncached ones go to the server, in one request."""
        self._ensure_open()
        checks = list(checks)
        # Answers for this call; an invalidation during the request must not erase them
        known = {key: self._decisions[key] for key in checks if key in self._decisions}
        missing = [key for key in dict.fromkeys(checks) if key not in known]
        if missing:
            generation = self._generation
            results = await self.api.check_my_permissions(
                [{"resource": resource, "action": action} for resource, action in missing]
            )
            fetched = dict(zip(missing, results))
            if generation == self._generation and not self._closed:
                self._decisions.update(fetched)
            known.update(fetched)
        return [known[key] for key in checks]

    async def refresh(self) -> None:
        """
        Replace the cache with the user's effective permissions.

        Afterwards every cataloged (resource, action) the user holds reads
        True; keys the server did not list are left unknown.
        """
        self._ensure_open()
        self.invalidate()
        generation = self._generation
        data = await self.api.get_my_permissions()
        if generation != self._generation:
            return
        self.role = data.get("role", self.role)
        for entry in data.get("permissions", []):
            self._decisions[(entry["resource"], entry["action"])] = True
        log.debug("Loaded %d permissions for user %s", len(self._decisions), self.user_id)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self) -> None:
        """Drop every cached decision and detach in-flight requests."""
        self._generation += 1
        self._decisions.clear()
        self._in_flight.clear()

    def invalidate_user(self, user_id: int) -> None:
        if user_id == self.user_id:
            self.invalidate()

    def invalidate_role(self, role: Optional[str]) -> None:
        """Invalidate when `role` is this principal's role; None means unknown."""
        role = getattr(role, "value", role)
        if role is None or role == self.role:
            self.invalidate()

    async def close(self) -> None:
        """Dispose of the cache at logout."""
        self._closed = True
        for task in list(self._in_flight.values()):
            task.cancel()
        self.invalidate()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def assign_permission_to_role(self, role: str, permission_id: int) -> dict:
        binding = await self.api.assign_permission_to_role(getattr(role, "value", role), permission_id)
        self.invalidate_role(role)
        return binding

    async def remove_role_permission(self, binding_id: int, role: Optional[str] = None) -> None:
        """Unbind; without the binding's role every cached decision is dropped."""
        await self.api.remove_role_permission(binding_id)
        self.invalidate_role(role)

    async def assign_permission_to_user(
        self,
        user_id: int,
        permission_id: int,
        granted: bool = True,
        expires_at: Optional[datetime] = None,
    ) -> dict:
        override = await self.api.assign_permission_to_user(user_id, permission_id, granted, expires_at)
        self.invalidate_user(user_id)
        return override

    async def remove_user_permission(self, override_id: int, user_id: Optional[int] = None) -> None:
        """Remove an override; without its user every cached decision is dropped."""
        await self.api.remove_user_permission(override_id)
        if user_id is None:
            self.invalidate()
        else:
            self.invalidate_user(user_id)

    # ------------------------------------------------------------------

    async def _fetch(self, key: CacheKey, generation: int) -> bool:
        resource, action = key
        allowed = await self.api.check_my_permission(resource, action)
        if generation == self._generation and not self._closed:
            self._decisions[key] = allowed
        return allowed

    def _forget(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Waiters re-raise the error themselves; this only marks it retrieved
        # for the case where every waiter was cancelled.
        if not task.cancelled() and task.exception() is not None:
            log.debug("Permission check %s:%s failed: %r", key[0], key[1], task.exception())

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("PermissionCache is closed")
