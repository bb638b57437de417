from __future__ import annotations

import asyncio
import enum
import random
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from rotor_relay.iface import InterfaceController, select_controller
from rotor_relay.ipv6 import is_ipv6, random_ipv6
from rotor_relay.models import RotationConfig

log = structlog.get_logger()


class PoolState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class PoolStatus:
    enabled: bool
    pool_size: int
    interface: str
    prefix: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "poolSize": self.pool_size,
            "interface": self.interface,
            "prefix": self.prefix,
        }


@dataclass
class ReconcileResult:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


class AddressPool:
    """
    Пул исходящих IPv6 /128 на одном интерфейсе.

    addresses упорядочены по времени назначения (старые в начале). Фоновый цикл
    раз в reconcile_interval_ms либо добирает пул до desired_size, либо
    выкидывает batch_size самых старых; next() раздаёт адреса по кругу.
    """

    def __init__(
        self,
        config: RotationConfig,
        controller: Optional[InterfaceController] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.controller = controller or select_controller(
            config.interface, debug=config.debug, sudo=config.sudo
        )
        self._rng = rng or random.Random()
        self._addresses: List[str] = []
        self._cursor = 0
        self._state = PoolState.UNINITIALIZED
        self._guard = threading.Lock()      # list + cursor
        self._pass_lock = asyncio.Lock()    # single in-flight reconcile
        self._task: Optional[asyncio.Task] = None

    # --- read side ---

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is PoolState.RUNNING

    @property
    def addresses(self) -> List[str]:
        with self._guard:
            return list(self._addresses)

    def __len__(self) -> int:
        with self._guard:
            return len(self._addresses)

    def status(self) -> PoolStatus:
        with self._guard:
            size = len(self._addresses)
        return PoolStatus(
            enabled=self.running,
            pool_size=size,
            interface=self.config.interface,
            prefix=self.config.prefix,
        )

    def next(self) -> Optional[str]:
        """Round-robin; None when the pool is empty, not running, or holds no valid entry."""
        if not self.running:
            return None
        with self._guard:
            for _ in range(len(self._addresses)):
                addr = self._addresses[self._cursor]
                self._cursor = (self._cursor + 1) % len(self._addresses)
                if is_ipv6(addr):
                    return addr
                log.warning("pool_invalid_entry", entry=repr(addr))
        return None

    # --- lifecycle ---

    async def start(self) -> bool:
        if self._state is PoolState.RUNNING:
            return True
        if self._state is PoolState.STOPPED:
            raise RuntimeError("address pool was stopped; create a new instance")
        if self._state is PoolState.INITIALIZING:
            log.info("pool_start_in_progress", iface=self.config.interface)
            return False

        cfg = self.config
        if not cfg.enabled:
            log.info("pool_not_configured", hint="set rotation.prefix and rotation.subnet (IPV6_PREFIX/IPV6_SUBNET)")
            return False

        # занимаем состояние до первого await, чтобы второй start() не прошёл
        self._state = PoolState.INITIALIZING
        up = await asyncio.to_thread(self.controller.is_up)
        if self._state is not PoolState.INITIALIZING:
            return False
        if not up:
            self._state = PoolState.UNINITIALIZED
            log.error("pool_iface_down", iface=cfg.interface)
            return False

        log.info(
            "pool_starting",
            iface=cfg.interface,
            desired=cfg.desired_size,
            batch=cfg.batch_size,
            interval_ms=cfg.reconcile_interval_ms,
        )
        await self.reconcile()
        if self._state is not PoolState.INITIALIZING:
            # stop() пришёл во время первого прохода
            return False
        self._task = asyncio.create_task(self._loop(), name="rotor-reconcile")
        self._state = PoolState.RUNNING
        log.info("pool_started", iface=cfg.interface, size=len(self))
        return True

    async def stop(self) -> None:
        if self._state not in (PoolState.INITIALIZING, PoolState.RUNNING):
            return
        self._state = PoolState.STOPPED

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        # дождаться прохода, который мог быть в полёте
        async with self._pass_lock:
            drained = self.addresses
            failed = 0
            for addr in drained:
                if not await asyncio.to_thread(self.controller.remove, addr):
                    failed += 1
            with self._guard:
                self._addresses = []
                self._cursor = 0
        log.info("pool_stopped", removed=len(drained) - failed, failed=failed)

    async def _loop(self) -> None:
        interval = self.config.reconcile_interval
        while True:
            await asyncio.sleep(interval)
            # shield: отмена цикла не должна рвать проход посередине
            await asyncio.shield(self.reconcile())

    # --- reconciliation ---

    async def reconcile(self) -> Optional[ReconcileResult]:
        if self._pass_lock.locked():
            return None
        async with self._pass_lock:
            if self._state not in (PoolState.INITIALIZING, PoolState.RUNNING):
                return None
            try:
                return await self._reconcile_once()
            except Exception:
                log.exception("pool_reconcile_failed")
                return ReconcileResult()

    async def _reconcile_once(self) -> ReconcileResult:
        cfg = self.config
        res = ReconcileResult()

        with self._guard:
            size = len(self._addresses)
            oldest = self._addresses[:min(cfg.batch_size, size)]

        if size >= cfg.desired_size:
            # сначала снимаем с интерфейса, потом выкидываем из списка (даже если del не прошёл)
            for addr in oldest:
                await asyncio.to_thread(self.controller.remove, addr)
            with self._guard:
                # только этот проход меняет список, так что oldest всё ещё в начале
                del self._addresses[:len(oldest)]
                if self._cursor >= len(self._addresses):
                    self._cursor = 0
            res.removed = oldest
            if cfg.debug:
                log.info("pool_rotated_out", count=len(res.removed), size=len(self))
            return res

        to_add = min(cfg.batch_size, cfg.desired_size - size)
        for _ in range(to_add):
            addr = random_ipv6(cfg.prefix, cfg.subnet, self._rng)
            if await asyncio.to_thread(self.controller.add, addr):
                res.added.append(addr)

        if res.added:
            with self._guard:
                self._addresses.extend(res.added)
            if cfg.debug:
                log.info("pool_grown", count=len(res.added), size=len(self))
        elif to_add > 0:
            log.warning("pool_grow_failed", wanted=to_add, iface=cfg.interface)
        return res
