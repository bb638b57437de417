from __future__ import annotations

import json
import subprocess
import sys
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import structlog

from rotor_relay.ipv6 import contains_address, find_ipv6_tokens

log = structlog.get_logger()

CMD_TIMEOUT = 10


class InterfaceController(ABC):
    """
    Управление /128 адресами на одном интерфейсе хоста.
    Все операции возвращают bool и никогда не бросают: их зовёт фоновый цикл.
    """

    platform = "generic"

    def __init__(self, interface: str, debug: bool = False, sudo: bool = False) -> None:
        self.interface = interface
        self.debug = debug
        self._sudo = ["sudo"] if sudo else []

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            self._sudo + cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=CMD_TIMEOUT,
        )

    def _output(self, cmd: List[str]) -> Optional[str]:
        """stdout on success, None on any failure."""
        try:
            cp = self._run(cmd)
        except (OSError, subprocess.SubprocessError) as e:
            log.warning("iface_cmd_error", iface=self.interface, cmd=cmd[0], error=str(e))
            return None
        if cp.returncode != 0:
            return None
        return cp.stdout or ""

    def _query(self, cmd: List[str]) -> str:
        """Like _output, but raises: used where 'unknown' must not read as 'absent'."""
        cp = self._run(cmd)
        if cp.returncode != 0:
            raise RuntimeError(f"{' '.join(cmd)}: {(cp.stderr or '').strip() or cp.returncode}")
        return cp.stdout or ""

    # --- per-platform pieces ---

    @abstractmethod
    def _check_up(self) -> bool: ...

    @abstractmethod
    def _assigned(self) -> List[str]: ...

    @abstractmethod
    def _add_cmd(self, address: str) -> List[str]: ...

    @abstractmethod
    def _del_cmd(self, address: str) -> List[str]: ...

    # --- public contract ---

    def is_up(self) -> bool:
        try:
            return self._check_up()
        except Exception as e:
            log.warning("iface_check_failed", iface=self.interface, error=str(e))
            return False

    def has_address(self, address: str) -> bool:
        try:
            return contains_address(self._assigned(), address)
        except Exception as e:
            if self.debug:
                log.warning("iface_query_failed", iface=self.interface, error=str(e))
            return False

    def add(self, address: str) -> bool:
        err = self._apply(self._add_cmd(address))
        if err is None:
            if self.debug:
                log.info("iface_addr_added", iface=self.interface, addr=address)
            return True
        # "already exists" решаем по состоянию интерфейса, а не по тексту ошибки
        if self.has_address(address):
            if self.debug:
                log.info("iface_addr_exists", iface=self.interface, addr=address)
            return True
        if self.debug:
            log.warning("iface_add_failed", iface=self.interface, addr=address, error=err)
        return False

    def remove(self, address: str) -> bool:
        err = self._apply(self._del_cmd(address))
        if err is None:
            if self.debug:
                log.info("iface_addr_removed", iface=self.interface, addr=address)
            return True
        if not self._still_present(address):
            if self.debug:
                log.info("iface_addr_already_gone", iface=self.interface, addr=address)
            return True
        if self.debug:
            log.warning("iface_remove_failed", iface=self.interface, addr=address, error=err)
        return False

    def _still_present(self, address: str) -> bool:
        # если состояние не читается, считаем что адрес ещё висит
        try:
            return contains_address(self._assigned(), address)
        except Exception:
            return True

    def _apply(self, cmd: List[str]) -> Optional[str]:
        """None on success, error text otherwise."""
        try:
            cp = self._run(cmd)
        except (OSError, subprocess.SubprocessError) as e:
            return str(e)
        if cp.returncode == 0:
            return None
        return (cp.stderr or cp.stdout or f"exit {cp.returncode}").strip()


class LinuxController(InterfaceController):
    platform = "linux"

    def _check_up(self) -> bool:
        cp = self._run(["ip", "-j", "link", "show", "dev", self.interface])
        if cp.returncode != 0:
            log.warning("iface_not_found", iface=self.interface, error=(cp.stderr or "").strip())
            return False
        data = json.loads(cp.stdout or "[]")
        if not data:
            return False
        link = data[0]
        flags = link.get("flags") or []
        return "UP" in flags and (link.get("operstate") == "UP" or "LOWER_UP" in flags)

    def _assigned(self) -> List[str]:
        out = self._query(["ip", "-j", "-6", "addr", "show", "dev", self.interface])
        data = json.loads(out or "[]")
        if not data:
            return []
        res: List[str] = []
        for ai in data[0].get("addr_info", []):
            if ai.get("family") == "inet6" and ai.get("local"):
                res.append(ai["local"])
        return res

    def _add_cmd(self, address: str) -> List[str]:
        return ["ip", "-6", "addr", "add", f"{address}/128", "dev", self.interface]

    def _del_cmd(self, address: str) -> List[str]:
        return ["ip", "-6", "addr", "del", f"{address}/128", "dev", self.interface]


class DarwinController(InterfaceController):
    platform = "darwin"

    def _check_up(self) -> bool:
        out = self._output(["ifconfig", self.interface])
        if out is None:
            log.warning("iface_not_found", iface=self.interface)
            return False
        lines = out.splitlines()
        if not lines:
            return False
        # en0: flags=8863<UP,BROADCAST,SMART,RUNNING,...> mtu 1500
        head = lines[0]
        flags = head[head.find("<") + 1:head.find(">")].split(",") if "<" in head else []
        if "UP" not in flags:
            return False
        for line in lines[1:]:
            line = line.strip()
            if line.startswith("status:"):
                return line.split(":", 1)[1].strip() == "active"
        return True

    def _assigned(self) -> List[str]:
        res: List[str] = []
        for line in self._query(["ifconfig", self.interface]).splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "inet6":
                res.append(parts[1].split("%", 1)[0])
        return res

    def _add_cmd(self, address: str) -> List[str]:
        return ["ifconfig", self.interface, "inet6", f"{address}/128", "alias"]

    def _del_cmd(self, address: str) -> List[str]:
        return ["ifconfig", self.interface, "inet6", f"{address}/128", "-alias"]


class WindowsController(InterfaceController):
    platform = "win32"

    def _check_up(self) -> bool:
        out = self._output(["netsh", "interface", "ipv6", "show", "interfaces"])
        if out is None:
            return False
        # Idx  Met  MTU  State  Name
        for line in out.splitlines():
            parts = line.split(None, 4)
            if len(parts) == 5 and parts[0].isdigit() and parts[4].strip() == self.interface:
                return parts[3].lower() == "connected"
        log.warning("iface_not_found", iface=self.interface)
        return False

    def _assigned(self) -> List[str]:
        out = self._query(["netsh", "interface", "ipv6", "show", "addresses", f"interface={self.interface}"])
        return find_ipv6_tokens(out)

    def _add_cmd(self, address: str) -> List[str]:
        return ["netsh", "interface", "ipv6", "add", "address", self.interface, f"{address}/128"]

    def _del_cmd(self, address: str) -> List[str]:
        return ["netsh", "interface", "ipv6", "delete", "address", self.interface, address]


CONTROLLERS: Dict[str, type] = {
    "linux": LinuxController,
    "darwin": DarwinController,
    "win32": WindowsController,
}


def select_controller(
    interface: str,
    debug: bool = False,
    sudo: bool = False,
    platform: Optional[str] = None,
) -> InterfaceController:
    plat = platform or sys.platform
    if plat.startswith("linux"):
        plat = "linux"
    cls = CONTROLLERS.get(plat, LinuxController)
    return cls(interface, debug=debug, sudo=sudo)
