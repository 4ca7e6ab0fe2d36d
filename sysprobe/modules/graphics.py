#!/usr/bin/env python3
"""
Graphics diagnostics: display server, GPUs, drivers and compositor.
"""

import os
import re
from enum import Enum
from typing import List, Optional, Set

from .base import Collector, evidence
from .errors import ParseError
from .models import CollectorResult, Severity
from .sources import SystemSources

DRM_ROOT = "/sys/class/drm"
XORG_LOG = "/var/log/Xorg.0.log"
NVIDIA_TEMPERATURE_WARNING = 85
VRAM_WARNING = 95
GPU_DRIVERS = ("nvidia", "nouveau", "radeon", "amdgpu", "i915")
# Pairs of kernel drivers that fight over the same hardware
CONFLICTING_DRIVERS = (("nvidia", "nouveau"), ("radeon", "amdgpu"))
NVIDIA_QUERY = ("index,name,memory.used,memory.total,utilization.gpu,temperature.gpu,"
                "power.draw,power.limit,ecc.errors.corrected.volatile.total,"
                "ecc.errors.uncorrected.volatile.total")


class DisplayServer(str, Enum):
    WAYLAND = "wayland"
    X11 = "x11"
    NONE = "none"


class Compositor(str, Enum):
    KWIN = "kwin"
    MUTTER = "mutter"
    PICOM = "picom"
    COMPTON = "compton"
    XFWM4 = "xfwm4"
    I3 = "i3"
    AWESOME = "awesome"
    OPENBOX = "openbox"
    FLUXBOX = "fluxbox"
    DWM = "dwm"
    SWAY = "sway"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_name(cls, name: str) -> "Compositor":
        name = (name or "").strip().lower()
        if name.startswith("kwin") or name == "kde":
            return cls.KWIN
        if name in ("gnome", "gnome-shell"):
            return cls.MUTTER
        try:
            return cls(name)
        except ValueError:
            return cls.UNSUPPORTED

    @classmethod
    def detect(cls, process_names: Set[str]) -> Optional["Compositor"]:
        """First known compositor found among running process names."""
        for name in sorted(process_names):
            compositor = cls.from_name(name)
            if compositor != cls.UNSUPPORTED:
                return compositor
        return None


# Config files inspected for compositors without a query tool, relative to $HOME
COMPOSITOR_CONFIGS = {
    Compositor.PICOM: ([".config/picom.conf", ".config/compton.conf"], r"vsync|glx|backend"),
    Compositor.COMPTON: ([".config/compton.conf", ".config/picom.conf"], r"vsync|glx|backend"),
    Compositor.I3: ([".config/i3/config"], r"vsync|compton"),
    Compositor.AWESOME: ([".config/awesome/rc.lua"], r"vsync|compton"),
    Compositor.OPENBOX: ([".config/openbox/rc.xml"], r"vsync|compositing"),
    Compositor.FLUXBOX: ([".config/fluxbox/overlay"], r"vsync|overlay"),
    Compositor.DWM: ([".config/dwm/config.h"], r"vsync|xinerama"),
    Compositor.SWAY: ([".config/sway/config"], r"backend|render"),
}
COMPOSITOR_COMMANDS = {
    Compositor.KWIN: ["qdbus", "org.kde.KWin", "/KWin", "supportInformation"],
    Compositor.MUTTER: ["gsettings", "get", "org.gnome.mutter", "experimental-features"],
    Compositor.XFWM4: ["xfconf-query", "-c", "xfwm4", "-p", "/general/vblank_mode"],
    Compositor.SWAY: ["sway", "--version"],
}


def parse_number(value: str) -> Optional[float]:
    try:
        return float(value.strip())
    except ValueError:
        return None


class GraphicsCollector(Collector):
    """Display server, GPU status, drivers and compositor configuration."""

    requires = ("lspci", "nvidia-smi", "glxinfo", "xrandr", "wlr-randr", "intel_gpu_top",
                "radeontop", "drm-sysfs", "dmesg")

    def __init__(self, sources: Optional[SystemSources] = None, compositor: Optional[str] = None,
                 home: Optional[str] = None):
        super().__init__("graphics", "Graphics, GPU & Display", sources)
        self.compositor = compositor
        self.home = home
        self.subsections = {
            "display_server": True,
            "gpu_hardware": True,
            "nvidia": True,
            "drm_sysfs": True,
            "intel": True,
            "radeon": True,
            "display_config": True,
            "driver_info": True,
            "video_acceleration": True,
            "kernel_messages": True,
            "compositor": True,
            "driver_conflicts": True,
            "hybrid_graphics": True,
        }
        self.display_handlers = {
            DisplayServer.WAYLAND: self._wayland_session,
            DisplayServer.X11: self._x11_session,
            DisplayServer.NONE: self._no_session,
        }

    def display_server(self) -> DisplayServer:
        if self.has("wayland") or self.has("xwayland"):
            return DisplayServer.WAYLAND
        if self.has("xorg") or self.has("x-server"):
            return DisplayServer.X11
        return DisplayServer.NONE

    def collect(self, result: CollectorResult):
        server = self.display_server()
        self.check(result, "display_server", lambda r: self.display_handlers[server](r))
        self.check(result, "gpu_hardware", self._gpu_hardware, requires=("lspci",))
        self.check(result, "nvidia", self._nvidia, requires=("nvidia-smi",))
        self.check(result, "drm_sysfs", self._drm_sysfs, requires=("drm-sysfs",))
        self.check(result, "intel", self._intel, requires=("intel_gpu_top",))
        self.check(result, "radeon", self._radeon, requires=("radeontop",))
        randr = "wlr-randr" if server == DisplayServer.WAYLAND else "xrandr"
        self.check(result, "display_config", lambda r: self._display_config(r, randr), requires=(randr,))
        self.check(result, "driver_info", self._driver_info, requires=("glxinfo",))
        self.check(result, "video_acceleration", self._video_acceleration, any_of=("vdpauinfo", "vainfo"))
        self.check(result, "kernel_messages", self._kernel_messages, requires=("dmesg",))
        self.check(result, "compositor", self._compositor)
        self.check(result, "driver_conflicts", self._driver_conflicts)
        self.check(result, "hybrid_graphics", self._hybrid_graphics, requires=("drm-sysfs",))

    # -- display server --------------------------------------------------

    def _wayland_session(self, result: CollectorResult):
        name = self.compositor or "unknown compositor"
        if not self.has("journalctl"):
            result.info(f"Wayland is running ({name})", check="display_server")
            result.skip("display_server: journalctl not available for Wayland session logs")
            return
        lines = self.output_lines(["journalctl", "-b", "--no-pager"],
                                  filter_func=lambda line: "wayland" in line.lower(), trim_lines=20)
        errors = [line for line in lines if re.search(r"error|fail", line, re.IGNORECASE)]
        if errors:
            result.warning(f"Wayland is running ({name}); {len(errors)} error(s) in session logs",
                           evidence=evidence(errors), check="display_server")
        else:
            result.info(f"Wayland is running ({name})", evidence=evidence(lines), check="display_server")

    def _x11_session(self, result: CollectorResult):
        lines = self.sources.read_lines(XORG_LOG, filter_func=lambda line: "(EE)" in line)
        if lines is None:
            result.info("X11 is running", check="display_server")
            result.skip(f"display_server: {XORG_LOG} not readable")
        elif lines:
            result.warning(f"X11 is running; {len(lines)} error(s) in Xorg log",
                           evidence=evidence(lines, 20), check="display_server")
        else:
            result.info("X11 is running; no errors in Xorg log", check="display_server")

    def _no_session(self, result: CollectorResult):
        result.info("Neither X11 nor Wayland detected", check="display_server")

    # -- GPU hardware and vendor tools ----------------------------------

    def _gpu_hardware(self, result: CollectorResult):
        res = self.execute(["lspci", "-v"])
        gpus = []
        current = None
        for line in res.stdout:
            if line and not line[0].isspace():
                current = None
                if re.search(r"VGA|3D|2D", line):
                    current = {"name": line.strip(), "driver": None, "lines": [line]}
                    gpus.append(current)
            elif current is not None:
                current["lines"].append(line)
                if "Kernel driver in use:" in line:
                    current["driver"] = line.split(":", 1)[1].strip()
        if not gpus:
            result.info("No GPU found by lspci", check="gpu_hardware")
        for gpu in gpus:
            if gpu["driver"]:
                result.info(f"GPU {gpu['name']} (driver {gpu['driver']})",
                            evidence=evidence(gpu["lines"][:9]), check="gpu_hardware")
            else:
                result.warning(f"GPU {gpu['name']} has no kernel driver in use",
                               evidence=evidence(gpu["lines"][:9]), check="gpu_hardware")

    def _nvidia(self, result: CollectorResult):
        res = self.execute(["nvidia-smi", f"--query-gpu={NVIDIA_QUERY}", "--format=csv,noheader,nounits"])
        if res.exit_code != 0:
            # Typically an NVIDIA GPU without the proprietary driver loaded
            result.warning("nvidia-smi failed; is the NVIDIA driver loaded?",
                           evidence=evidence(res.stdout + res.stderr.splitlines()), check="nvidia")
            return

        gpus = 0
        for line in res.stdout:
            fields = [f.strip() for f in line.split(",")]
            if len(fields) < 10:
                continue
            gpus += 1
            index, name = fields[0], fields[1]
            used, total, util, temp, draw, limit, ecc_corr, ecc_uncorr = [parse_number(f) for f in fields[2:10]]
            metrics = {key: value for key, value in (
                ("memory_used_mib", used), ("memory_total_mib", total), ("utilization_percent", util),
                ("temperature_c", temp), ("power_draw_w", draw), ("power_limit_w", limit)) if value is not None}
            result.info(f"NVIDIA GPU {index} {name}: {used or 0:g}/{total or 0:g} MiB used, {util or 0:g}% busy",
                        check="nvidia", metrics=metrics)
            if ecc_uncorr:
                result.critical(f"NVIDIA GPU {index}: {ecc_uncorr:g} uncorrected ECC errors", check="nvidia")
            if ecc_corr:
                result.warning(f"NVIDIA GPU {index}: {ecc_corr:g} corrected ECC errors", check="nvidia")
            if temp is not None and temp >= NVIDIA_TEMPERATURE_WARNING:
                result.warning(f"NVIDIA GPU {index} running hot: {temp:g}C", check="nvidia")
            if draw is not None and limit and draw >= limit:
                result.warning(f"NVIDIA GPU {index} at power limit: {draw:g}/{limit:g} W", check="nvidia")
        if not gpus:
            raise ParseError("nvidia-smi returned no GPU rows", evidence(res.stdout))

        apps = self.execute(["nvidia-smi", "--query-compute-apps=pid,process_name,used_memory",
                             "--format=csv,noheader"])
        if apps.ok and apps.stdout:
            result.info(f"{len(apps.stdout)} NVIDIA compute process(es)", evidence=evidence(apps.stdout),
                        check="nvidia")

    def _drm_sysfs(self, result: CollectorResult):
        reported = 0
        for busy_path in self.sources.glob(f"{DRM_ROOT}/card[0-9]*/device/gpu_busy_percent"):
            card = busy_path.split("/")[4]
            busy = parse_number(self.sources.read_text(busy_path) or "")
            if busy is not None:
                reported += 1
                result.info(f"{card} GPU usage {busy:g}%", check="drm_sysfs", metrics={"busy_percent": busy})

        for used_path in self.sources.glob(f"{DRM_ROOT}/card[0-9]*/device/mem_info_vram_used"):
            device = os.path.dirname(used_path)
            card = used_path.split("/")[4]
            used = parse_number(self.sources.read_text(used_path) or "")
            total = parse_number(self.sources.read_text(f"{device}/mem_info_vram_total") or "")
            if used is None or not total:
                continue
            reported += 1
            used_mb, total_mb = int(used / 1024 / 1024), int(total / 1024 / 1024)
            percent = 100.0 * used / total
            severity = Severity.WARNING if percent >= VRAM_WARNING else Severity.INFO
            lines = []
            for name in ("power_dpm_state", "pp_dpm_sclk"):
                content = self.sources.read_lines(f"{device}/{name}")
                if content:
                    lines += [f"{name}:"] + content
            result.add(severity, f"{card} VRAM usage {used_mb}MB / {total_mb}MB", evidence=evidence(lines),
                       check="drm_sysfs", metrics={"vram_used_mb": used_mb, "vram_total_mb": total_mb})

        if not reported:
            result.info("No DRM sysfs GPU statistics exposed", check="drm_sysfs")

    def _intel(self, result: CollectorResult):
        res = self.execute(["intel_gpu_top", "-J", "-s", "1000"], timeout=2, allow_timeout=True)
        if not res.stdout:
            raise ParseError("intel_gpu_top produced no output", evidence(res.stderr.splitlines()))
        result.info("Intel GPU engine usage sampled", evidence=evidence(res.stdout[:30]), check="intel")

    def _radeon(self, result: CollectorResult):
        res = self.execute(["radeontop", "-d", "-", "-l", "1"], timeout=5, allow_timeout=True)
        for line in res.stdout:
            match = re.search(r"gpu ([\d.]+)%", line)
            if match:
                busy = float(match.group(1))
                result.info(f"Radeon GPU usage {busy:g}%", evidence=line.strip(), check="radeon",
                            metrics={"busy_percent": busy})
                return
        raise ParseError("radeontop reported no GPU usage", evidence(res.stdout + res.stderr.splitlines()))

    # -- display and driver configuration -------------------------------

    def _display_config(self, result: CollectorResult, tool: str):
        if tool == "xrandr":
            res = self.execute(["xrandr"])
            outputs = []
            current = None
            for line in res.stdout:
                match = re.match(r"^(\S+) connected", line)
                if match:
                    current = {"name": match.group(1), "mode": None}
                    outputs.append(current)
                elif not line[:1].isspace():
                    current = None
                elif current is not None and "*" in line and current["mode"] is None:
                    parts = line.split()
                    rate = next((p.rstrip("*+") for p in parts[1:] if "*" in p), "?")
                    current["mode"] = f"{parts[0]} @ {rate}Hz"
        else:
            res = self.execute(["wlr-randr"])
            outputs = []
            current = None
            for line in res.stdout:
                if line and not line[0].isspace():
                    current = {"name": line.split()[0], "mode": None}
                    outputs.append(current)
                elif current is not None and "current" in line:
                    match = re.search(r"(\d+x\d+) px, ([\d.]+) Hz", line)
                    if match:
                        current["mode"] = f"{match.group(1)} @ {float(match.group(2)):.2f}Hz"

        if not outputs:
            raise ParseError(f"{tool} listed no connected outputs",
                             evidence(res.stdout + res.stderr.splitlines()))
        for output in outputs:
            result.info(f"Display {output['name']}: {output['mode'] or 'connected, no active mode'}",
                        check="display_config")

    def _driver_info(self, result: CollectorResult):
        res = self.execute(["glxinfo", "-B"])
        info = {}
        for line in res.stdout:
            key, _, value = line.partition(":")
            info[key.strip()] = value.strip()
        renderer = info.get("OpenGL renderer string")
        if not renderer:
            raise ParseError("glxinfo reported no OpenGL renderer (no display?)",
                             evidence(res.stdout + res.stderr.splitlines()))
        summary = f"OpenGL {info.get('OpenGL version string', '?')} by {info.get('OpenGL vendor string', '?')}" \
                  f" on {renderer}"
        result.info(summary, check="driver_info")
        if info.get("direct rendering", "").lower() == "no":
            result.warning("Direct rendering is disabled", check="driver_info")
        if re.search(r"llvmpipe|softpipe|software", renderer, re.IGNORECASE):
            result.warning(f"Software rendering in use: {renderer}", check="driver_info")

    def _video_acceleration(self, result: CollectorResult):
        for tool, label in (("vdpauinfo", "VDPAU"), ("vainfo", "VA-API")):
            if not self.has(tool):
                result.skip(f"video_acceleration: {tool} not available")
                continue
            res = self.execute([tool])
            lines = res.stdout + res.stderr.splitlines()
            if res.exit_code != 0:
                result.warning(f"{label} initialisation failed", evidence=evidence(lines, 10),
                               check="video_acceleration")
                continue
            driver = next((line.split(":", 1)[1].strip() for line in lines
                           if "Driver version" in line or "Information string" in line), "available")
            result.info(f"{label}: {driver}", check="video_acceleration")

    def _kernel_messages(self, result: CollectorResult):
        lines = self.output_lines(["dmesg"], filter_func=lambda line: re.search(
            r"gpu|graphics|drm", line, re.IGNORECASE) is not None, trim_lines=10)
        errors = [line for line in lines if re.search(r"error|fail|timeout|hang", line, re.IGNORECASE)]
        if errors:
            result.warning(f"{len(errors)} graphics error(s) in kernel log", evidence=evidence(errors),
                           check="kernel_messages")
        else:
            result.info(f"{len(lines)} recent graphics kernel message(s), no errors", evidence=evidence(lines),
                        check="kernel_messages")

    # -- compositor ------------------------------------------------------

    def _compositor(self, result: CollectorResult):
        if self.compositor:
            compositor = Compositor.from_name(self.compositor)
            name = self.compositor
        else:
            compositor = Compositor.detect(self.sources.process_names())
            name = compositor.value if compositor else None
        if compositor is None:
            result.info("No compositor detected", check="compositor")
            return
        if compositor == Compositor.UNSUPPORTED:
            result.info(f"unsupported compositor: {name}", check="compositor")
            return

        lines = []
        command = COMPOSITOR_COMMANDS.get(compositor)
        if command:
            if self.has(command[0]):
                lines += self.execute(command).select(trim_lines=30)
            else:
                result.skip(f"compositor: {command[0]} not available")
        if compositor in COMPOSITOR_CONFIGS:
            lines += self._compositor_config(compositor)
        result.info(f"Compositor {compositor.value} detected", evidence=evidence(lines), check="compositor")

    def _compositor_config(self, compositor: Compositor) -> List[str]:
        paths, pattern = COMPOSITOR_CONFIGS[compositor]
        home = self.home or self.sources.home_directory()
        for relative in paths:
            path = os.path.join(home, relative)
            lines = self.sources.read_lines(
                path, filter_func=lambda line: re.search(pattern, line, re.IGNORECASE) is not None)
            if lines is not None:
                return [f"{path}:"] + lines
        return []

    def _driver_conflicts(self, result: CollectorResult):
        loaded = self.sources.loaded_modules()
        drivers = [d for d in GPU_DRIVERS if d in loaded]
        for first, second in CONFLICTING_DRIVERS:
            if first in drivers and second in drivers:
                result.warning(f"Conflicting GPU drivers loaded: {first} and {second}",
                               check="driver_conflicts")
        result.info(f"Loaded GPU drivers: {', '.join(drivers) or 'none'}", check="driver_conflicts")

    def _hybrid_graphics(self, result: CollectorResult):
        cards = [p for p in self.sources.glob(f"{DRM_ROOT}/card*") if re.search(r"card\d+$", p)]
        if len(cards) < 2:
            return
        lines = self.sources.read_lines(XORG_LOG, filter_func=lambda line: "prime" in line.lower()) or []
        result.info(f"Hybrid graphics detected: {len(cards)} GPUs", evidence=evidence(lines),
                    check="hybrid_graphics")
