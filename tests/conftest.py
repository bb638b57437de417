import random
import threading
from typing import Iterable, List, Optional

import pytest

from rotor_relay.iface import InterfaceController
from rotor_relay.models import RotationConfig
from rotor_relay.pool import AddressPool


class FakeController(InterfaceController):
    """In-memory interface: records every call, results scripted per test."""

    platform = "fake"

    def __init__(
        self,
        up: bool = True,
        add_results: Optional[Iterable[bool]] = None,
        remove_ok: bool = True,
    ) -> None:
        super().__init__("test0")
        self.up = up
        self._add_results = iter(add_results) if add_results is not None else None
        self.remove_ok = remove_ok
        self.assigned: List[str] = []
        self.added: List[str] = []
        self.removed: List[str] = []
        self.up_checks = 0
        self.add_gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def _check_up(self) -> bool:
        return self.up

    def _assigned(self) -> List[str]:
        return list(self.assigned)

    def _add_cmd(self, address):
        return ["true"]

    def _del_cmd(self, address):
        return ["true"]

    def is_up(self) -> bool:
        self.up_checks += 1
        return self.up

    def add(self, address: str) -> bool:
        if self.add_gate is not None:
            self.add_gate.wait(timeout=5)
        ok = next(self._add_results, True) if self._add_results is not None else True
        with self._lock:
            self.added.append(address)
            if ok:
                self.assigned.append(address)
        return ok

    def remove(self, address: str) -> bool:
        with self._lock:
            self.removed.append(address)
            if address in self.assigned:
                self.assigned.remove(address)
        return self.remove_ok


def make_config(**overrides) -> RotationConfig:
    base = dict(
        prefix="2001:db8:1234",
        subnet="5678",
        interface="test0",
        desired_size=3,
        batch_size=2,
        reconcile_interval_ms=60_000,
    )
    base.update(overrides)
    return RotationConfig(**base)


def make_pool(controller: Optional[FakeController] = None, **overrides) -> AddressPool:
    return AddressPool(
        make_config(**overrides),
        controller=controller or FakeController(),
        rng=random.Random(7),
    )


@pytest.fixture
def controller():
    return FakeController()
