"""
Traffic Shaping - parameter derivation and interface qdisc management.

Author: Vítor Eulálio Reis
Copyright (c) 2025

This module turns human-friendly (bandwidth, delay) tokens into concrete
traffic-control parameters and applies them to the server-side interface.

Derivation (pure):
    rate_kbps   = Mbps * 1000 | Kbps | <numeric prefix> * 1000
    burst_kbit  = max(64, round(rate_kbps * delay_s * 1.2))
    latency_ms  = max(200, 2 * delay_ms + 200)

    The burst holds one delay's worth of traffic plus 20% headroom, floored at
    64 kbit so zero-delay cells still get a usable bucket. The tbf admission
    latency covers a round trip plus a 200 ms scheduling margin.

Application (side-effecting):
    1. Remove any existing root qdisc
    2. Preferred: tcset <iface> --rate <kbps>Kbps --delay <ms>ms
    3. Fallback: netem delay at the root with a tbf rate limiter beneath it
    Either path counts as success. If both fail, ShapingApplicationError is
    raised and TrafficShaper.shaped() lets the trial run unshaped.

Usage:
    >>> shaping = derive_shaping("10Mbps", "30ms")
    >>> shaping.burst_kbit, shaping.latency_ms
    (360, 260)
    >>> shaper = TrafficShaper(config)
    >>> with shaper.shaped(shaping) as applied:
    ...     run_trial()
"""

import ipaddress
import logging
import re
import shutil
import subprocess
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Union

from harness.errors import ConfigurationError, ShapingApplicationError
from harness.models import ShapingConfig

logger = logging.getLogger(__name__)

MIN_BURST_KBIT = 64
BURST_HEADROOM = 1.2
MIN_LATENCY_MS = 200
LATENCY_MARGIN_MS = 200

BANDWIDTH_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z/]*)\s*$")
DELAY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s)\s*$")

Runner = Callable[..., subprocess.CompletedProcess]


def _as_number(value: float) -> Union[int, float]:
    return int(value) if float(value).is_integer() else value


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def parse_bandwidth_kbps(token: str) -> Union[int, float]:
    """
    Normalize a rate token to kbps.

    Unrecognized units fall back to treating the numeric prefix as Mbps, so
    "10mbit" and "10" both mean 10000 kbps. A WARNING is logged because this
    may hide a typo.
    """
    match = BANDWIDTH_PATTERN.match(token)
    if not match:
        raise ValueError(f"invalid bandwidth token {token!r}")
    value = float(match.group(1))
    unit = match.group(2).lower()

    if unit == "mbps":
        return _as_number(value * 1000)
    if unit == "kbps":
        return _as_number(value)

    logger.warning(f"Unrecognized bandwidth unit in {token!r}; treating {value:g} as Mbps")
    return _as_number(value * 1000)


def parse_delay_ms(token: str) -> Union[int, float]:
    """'30ms' -> 30, '1s' -> 1000"""
    match = DELAY_PATTERN.match(token)
    if not match:
        raise ValueError(f"invalid delay token {token!r} (expected <number>ms or <number>s)")
    value = float(match.group(1))
    if match.group(2) == "s":
        value *= 1000
    return _as_number(value)


def derive_shaping(bandwidth: str, delay: str) -> ShapingConfig:
    """Compute the ShapingConfig for a trial. No side effects."""
    kbps = parse_bandwidth_kbps(bandwidth)
    delay_ms = parse_delay_ms(delay)

    burst_kbit = max(MIN_BURST_KBIT, _round_half_up(kbps * (delay_ms / 1000) * BURST_HEADROOM))
    latency_ms = max(MIN_LATENCY_MS, _round_half_up(delay_ms * 2 + LATENCY_MARGIN_MS))

    return ShapingConfig(
        rate_kbps=kbps,
        delay_ms=delay_ms,
        burst_kbit=burst_kbit,
        latency_ms=latency_ms,
    )


def detect_interface(address: str, runner: Runner = subprocess.run) -> str:
    """
    Find the interface whose IPv4 network contains address.

    Parses `ip -o -4 addr show`, whose lines look like:
        2: eth1    inet 10.10.1.2/24 brd 10.10.1.255 scope global eth1 ...

    Raises:
        ConfigurationError: no interface matches, or `ip` is unavailable
    """
    try:
        target = ipaddress.ip_address(address)
    except ValueError as e:
        raise ConfigurationError(f"server address {address!r} is not an IP address") from e

    try:
        result = runner(["ip", "-o", "-4", "addr", "show"], capture_output=True, text=True)
    except OSError as e:
        raise ConfigurationError(f"cannot list interfaces: {e}") from e

    for line in (result.stdout or "").splitlines():
        fields = line.split()
        if "inet" not in fields or len(fields) < 4:
            continue
        name = fields[1].rstrip(":")
        cidr = fields[fields.index("inet") + 1]
        try:
            network = ipaddress.ip_interface(cidr).network
        except ValueError:
            continue
        if target in network:
            logger.info(f"Detected interface {name} for {address} ({cidr})")
            return name

    raise ConfigurationError(
        f"Could not detect network interface for {address}. Set IFNAME or shaping.interface."
    )


class TrafficShaper:
    """
    Sole owner of the interface's root qdisc.

    The qdisc is process-wide state shared by every trial, so it is modelled
    as a resource with acquire (apply) and release (reset). Use shaped() to
    get the release on every exit path.

    Attributes:
        interface: Network device the qdisc is attached to
        enabled: When False apply/reset only log
        use_sudo: Prefix tc/tcset invocations with sudo
        active: Whether a shaping configuration is currently installed
    """

    def __init__(self, config: dict, interface: Optional[str] = None, runner: Runner = subprocess.run):
        section = config["shaping"]
        self.enabled = bool(section.get("enabled", True))
        self.use_sudo = bool(section.get("use_sudo", True))
        self.preferred_tool = section.get("preferred_tool") or "tcset"
        self.interface = interface or section.get("interface")
        self.runner = runner
        self.active = False

        if self.enabled and not self.interface:
            self.interface = detect_interface(config["communication"]["server_address"], runner)

    def _cmd(self, *args: str) -> List[str]:
        return (["sudo"] if self.use_sudo else []) + list(args)

    def _run(self, cmd: List[str]) -> bool:
        try:
            result = self.runner(cmd, capture_output=True, text=True)
        except OSError as e:
            logger.debug(f"{cmd[0]} failed to start: {e}")
            return False
        if result.returncode != 0:
            logger.debug(f"{' '.join(cmd)} exited {result.returncode}: {(result.stderr or '').strip()}")
        return result.returncode == 0

    def _apply_preferred(self, shaping: ShapingConfig) -> bool:
        if not shutil.which(self.preferred_tool):
            return False
        ok = self._run(
            self._cmd(
                self.preferred_tool,
                self.interface,
                "--rate",
                f"{shaping.rate_kbps}Kbps",
                "--delay",
                shaping.tc_delay,
            )
        )
        if not ok:
            logger.info(f"{self.preferred_tool} present but failed - falling back to tc netem + tbf")
        return ok

    def _apply_fallback(self, shaping: ShapingConfig) -> bool:
        dev = self.interface
        netem_ok = self._run(
            self._cmd("tc", "qdisc", "add", "dev", dev, "root", "handle", "1:", "netem", "delay", shaping.tc_delay)
        )
        tbf_ok = self._run(
            self._cmd(
                "tc", "qdisc", "add", "dev", dev, "parent", "1:", "handle", "10:",
                "tbf", "rate", shaping.tc_rate,
                "burst", f"{shaping.burst_kbit}kbit",
                "latency", f"{shaping.latency_ms}ms",
            )
        )
        return netem_ok and tbf_ok

    def apply(self, shaping: ShapingConfig) -> str:
        """
        Install shaping on the interface.

        Returns:
            "tcset", "netem+tbf" or "disabled"

        Raises:
            ShapingApplicationError: both the preferred tool and the fallback failed
        """
        if not self.enabled:
            logger.debug("Shaping disabled; skipping apply")
            return "disabled"

        self.reset()

        if self._apply_preferred(shaping):
            self.active = True
            logger.info(
                f"Applied {self.preferred_tool}: rate={shaping.rate_kbps}Kbps "
                f"delay={shaping.tc_delay} on {self.interface}"
            )
            return self.preferred_tool

        if self._apply_fallback(shaping):
            self.active = True
            logger.info(
                f"Applied tc fallback on {self.interface}: rate={shaping.tc_rate} "
                f"delay={shaping.tc_delay} burst={shaping.burst_kbit}kbit "
                f"latency={shaping.latency_ms}ms"
            )
            return "netem+tbf"

        # A half-installed netem without its tbf child must not leak
        self.reset()
        raise ShapingApplicationError(
            f"could not shape {self.interface} (rate={shaping.tc_rate}, delay={shaping.tc_delay})"
        )

    def reset(self):
        """Return the interface to its unshaped baseline. Never raises."""
        if not self.enabled:
            return
        # Deleting a missing root qdisc fails; that is the baseline already
        self._run(self._cmd("tc", "qdisc", "del", "dev", self.interface, "root"))
        self.active = False

    @contextmanager
    def shaped(self, shaping: ShapingConfig) -> Iterator[bool]:
        """
        Apply shaping for the duration of the block, then always reset.

        Yields True when shaping is in place, False when the block runs
        unshaped because application failed.
        """
        try:
            try:
                self.apply(shaping)
                applied = self.enabled
            except ShapingApplicationError as e:
                logger.warning(f"{e}; running trial UNSHAPED (intended condition still recorded)")
                applied = False
            yield applied
        finally:
            self.reset()
