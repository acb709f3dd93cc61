"""Virtual user pool: reconcile live asyncio workers to the scheduler's target.

Growing spawns one task per missing user. Shrinking marks the oldest live
users Stopping; they finish the request in flight and leave on their own.
Nothing here cancels a task mid-request.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from collections.abc import Awaitable, Callable

from .logging_config import get_logger
from .models import VirtualUser, VirtualUserState

logger = get_logger("pool")

UserLoop = Callable[[VirtualUser], Awaitable[None]]


class VirtualUserPool:
    """Owns every VirtualUser. reconcile() is serialized by a lock."""

    __slots__ = ("_user_loop", "_users", "_ids", "_lock", "_fatal_error", "_spawned_total")

    def __init__(self, user_loop: UserLoop) -> None:
        self._user_loop = user_loop
        # Insertion order == spawn order, so iteration is oldest-first.
        self._users: dict[int, VirtualUser] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._fatal_error: BaseException | None = None
        self._spawned_total = 0

    @property
    def live_count(self) -> int:
        """Users that will keep iterating (Idle or Running)."""
        return sum(1 for u in self._users.values() if u.is_live)

    @property
    def stopping_count(self) -> int:
        return sum(1 for u in self._users.values() if u.state is VirtualUserState.STOPPING)

    @property
    def spawned_total(self) -> int:
        return self._spawned_total

    @property
    def fatal_error(self) -> BaseException | None:
        """First exception that escaped a worker loop, if any."""
        return self._fatal_error

    def users(self) -> list[VirtualUser]:
        return list(self._users.values())

    def reconcile(self, target: int) -> int:
        """Spawn or retire users so that live_count == target. Returns the new live count."""
        if target < 0:
            target = 0
        with self._lock:
            live = [u for u in self._users.values() if u.is_live]
            deficit = target - len(live)
            if deficit > 0:
                for _ in range(deficit):
                    self._spawn()
                logger.debug("Pool grew by %d users", deficit, extra={"target": target, "live_users": target})
            elif deficit < 0:
                for user in live[:-deficit]:
                    user.request_stop()
                logger.debug("Pool retiring %d users", -deficit, extra={"target": target, "live_users": target})
            return target

    def stop_all(self) -> None:
        """Mark every user Stopping (run end or abort)."""
        with self._lock:
            for user in self._users.values():
                if user.is_live:
                    user.request_stop()

    async def drain(self) -> None:
        """Wait until every worker task has exited. In-flight requests complete normally."""
        tasks = [u.task for u in self._users.values() if u.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self) -> VirtualUser:
        user = VirtualUser(next(self._ids))
        self._users[user.id] = user
        self._spawned_total += 1
        user.task = asyncio.create_task(self._run_user(user), name=f"vu-{user.id}")
        return user

    async def _run_user(self, user: VirtualUser) -> None:
        if user.state is VirtualUserState.IDLE:
            user.state = VirtualUserState.RUNNING
        try:
            await self._user_loop(user)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._fatal_error is None:
                self._fatal_error = e
            logger.exception("Virtual user terminated with an error", extra={"user_id": user.id})
        finally:
            user.state = VirtualUserState.STOPPING
            self._users.pop(user.id, None)
