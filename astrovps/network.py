"""Guest networking: DHCP reservations and host NAT port forwards."""

from __future__ import annotations

from typing import List, Optional, Sequence
from xml.etree.ElementTree import Element, tostring

from astrovps.constants import MAC_ADDRESS_RE
from astrovps.exceptions import ManagerError
from astrovps.models import PortForward
from astrovps.runner import CommandRunner
from astrovps.utils import log


def render_dhcp_host_xml(mac: str, name: str, ip: str) -> str:
    """Render the ``<host/>`` element ``virsh net-update ... ip-dhcp-host`` expects."""
    mac = mac.lower()
    if not MAC_ADDRESS_RE.match(mac):
        raise ManagerError(f"Invalid MAC address: {mac}")
    host = Element("host", mac=mac, name=name, ip=ip)
    return tostring(host, encoding="unicode")


class PortForwarder:
    """Maintains DNAT + FORWARD rules that expose guest ports on the host.

    Every rule is checked with ``iptables -C`` first, so applying or removing
    twice leaves the ruleset unchanged.
    """

    def __init__(
        self,
        runner: CommandRunner,
        vm_ip: str,
        forwards: Sequence[PortForward],
        interface: Optional[str] = None,
    ) -> None:
        self.runner = runner
        self.vm_ip = vm_ip
        self.forwards = list(forwards)
        self.interface = interface

    def _dnat_rule(self, fwd: PortForward) -> List[str]:
        rule = ["PREROUTING"]
        if self.interface:
            rule += ["-i", self.interface]
        rule += [
            "-p", fwd.protocol,
            "--dport", str(fwd.host_port),
            "-j", "DNAT",
            "--to-destination", f"{self.vm_ip}:{fwd.guest_port}",
        ]
        return rule

    def _forward_rule(self, fwd: PortForward) -> List[str]:
        return [
            "FORWARD",
            "-p", fwd.protocol,
            "-d", self.vm_ip,
            "--dport", str(fwd.guest_port),
            "-j", "ACCEPT",
        ]

    def _rules(self) -> List[List[str]]:
        rules: List[List[str]] = []
        for fwd in self.forwards:
            rules.append(["-t", "nat", *self._dnat_rule(fwd)])
            rules.append(self._forward_rule(fwd))
        return rules

    @staticmethod
    def _split(rule: List[str]):
        if rule[0] == "-t":
            return rule[:2], rule[2], rule[3:]
        return [], rule[0], rule[1:]

    def _has_rule(self, rule: List[str]) -> bool:
        table, chain, spec = self._split(rule)
        result = self.runner.query(["iptables", *table, "-C", chain, *spec], privileged=True)
        return result.returncode == 0

    def apply(self) -> int:
        """Insert missing rules; returns how many were added."""
        added = 0
        for rule in self._rules():
            if self._has_rule(rule):
                continue
            table, chain, spec = self._split(rule)
            self.runner.run(["iptables", *table, "-I", chain, "1", *spec], privileged=True)
            added += 1
        if added:
            log("SUCCESS", f"Port forwarding active: {self.describe()}")
        else:
            log("INFO", f"Port forwarding already in place: {self.describe()}")
        return added

    def remove(self) -> int:
        """Delete present rules; returns how many were removed."""
        removed = 0
        for rule in self._rules():
            if not self._has_rule(rule):
                continue
            table, chain, spec = self._split(rule)
            self.runner.run(["iptables", *table, "-D", chain, *spec], privileged=True)
            removed += 1
        log("INFO", f"Removed {removed} port-forward rule(s)")
        return removed

    def present(self) -> bool:
        return all(self._has_rule(rule) for rule in self._rules())

    def describe(self) -> str:
        return ", ".join(f"{f.host_port}/{f.protocol} -> {self.vm_ip}:{f.guest_port}" for f in self.forwards)
