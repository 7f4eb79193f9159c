"""Tests for per-phase emulator command assembly."""

import pytest

from win2cloud.config import BuildConfig, BuildLayout
from win2cloud.emulator.qemu import WaitPolicy, build_invocation
from win2cloud.pipeline.state import Phase


def invocation(config, layout, phase):
    return build_invocation(config, layout, phase, layout.disk_path("win"), "win")


def drives(args):
    return [args[i + 1] for i, a in enumerate(args) if a == "-drive"]


def arg_after(args, flag):
    return args[args.index(flag) + 1]


# ═══════════════════════════════════════════════════════════════════
#  Phase profiles
# ═══════════════════════════════════════════════════════════════════

class TestPhaseProfiles:
    def test_installing_attaches_both_isos(self, config, layout):
        args = invocation(config, layout, Phase.INSTALLING).args
        attached = drives(args)

        assert len(attached) == 3
        assert f"file={layout.install_media}" in attached[1]
        assert "media=cdrom" in attached[1] and "index=1" in attached[1]
        assert f"file={layout.driver_media}" in attached[2]
        assert "index=2" in attached[2]
        assert arg_after(args, "-boot") == "order=dc"

    def test_configuring_has_drivers_and_port_forward(self, config, layout):
        args = invocation(config, layout, Phase.CONFIGURING).args
        attached = drives(args)

        assert len(attached) == 2
        assert f"file={layout.driver_media}" in attached[1]
        assert arg_after(args, "-boot") == "order=c"
        assert arg_after(args, "-netdev") == "user,id=net0,hostfwd=tcp::3389-:3389"

    def test_generalizing_forwards_but_has_no_media(self, config, layout):
        args = invocation(config, layout, Phase.GENERALIZING).args
        assert len(drives(args)) == 1
        assert "hostfwd" in arg_after(args, "-netdev")

    def test_test_boot_has_only_the_disk(self, config, layout):
        args = invocation(config, layout, Phase.TEST_BOOTING).args
        assert len(drives(args)) == 1
        assert arg_after(args, "-netdev") == "user,id=net0"
        assert arg_after(args, "-boot") == "order=c"

    @pytest.mark.parametrize("phase,policy", [
        (Phase.INSTALLING, WaitPolicy.WAIT_FOR_EXIT),
        (Phase.CONFIGURING, WaitPolicy.WAIT_FOR_EXIT_OR_SIGNAL),
        (Phase.GENERALIZING, WaitPolicy.WAIT_FOR_EXIT),
        (Phase.TEST_BOOTING, WaitPolicy.WAIT_FOR_EXIT_OR_SIGNAL),
    ])
    def test_wait_policy(self, config, layout, phase, policy):
        assert invocation(config, layout, phase).wait_policy is policy

    @pytest.mark.parametrize("phase", [Phase.PROVISIONING, Phase.CONVERTING, Phase.COMPRESSING])
    def test_non_guest_phase_rejected(self, config, layout, phase):
        with pytest.raises(ValueError):
            invocation(config, layout, phase)

    def test_transcript_per_phase(self, config, layout):
        inv = invocation(config, layout, Phase.GENERALIZING)
        assert inv.transcript_path == layout.transcript_path("win", "generalizing")
        assert arg_after(list(inv.args), "-name") == "win-generalizing"


# ═══════════════════════════════════════════════════════════════════
#  Hardware and devices
# ═══════════════════════════════════════════════════════════════════

class TestHardware:
    def test_hardware_acceleration(self, config, layout):
        args = invocation(config, layout, Phase.INSTALLING).args
        assert arg_after(args, "-machine") == "q35,accel=kvm"
        assert arg_after(args, "-cpu") == "host"
        assert arg_after(args, "-m") == "4096"
        assert arg_after(args, "-smp") == "2"

    def test_software_acceleration(self, tmp_path, config_data):
        config_data["vm"]["acceleration"] = "software"
        config = BuildConfig(**config_data)
        args = invocation(config, BuildLayout(tmp_path, config), Phase.INSTALLING).args
        assert arg_after(args, "-machine") == "q35,accel=tcg"
        assert arg_after(args, "-cpu") == "qemu64"

    def test_vhd_working_disk_uses_vpc_driver(self, tmp_path, config_data):
        config_data["disk"]["format"] = "vhd"
        config = BuildConfig(**config_data)
        layout = BuildLayout(tmp_path, config)
        disk = drives(invocation(config, layout, Phase.TEST_BOOTING).args)[0]
        assert "format=vpc" in disk
        assert disk.startswith(f"file={layout.disk_path('win')}")

    def test_headless_display_has_no_tablet(self, tmp_path, config_data):
        config_data["emulator"] = {"display": "none", "extra_args": ["-vga", "std"]}
        config = BuildConfig(**config_data)
        inv = invocation(config, BuildLayout(tmp_path, config), Phase.CONFIGURING)

        assert "usb-tablet" not in inv.args
        assert inv.command[0] == "qemu-system-x86_64"
        assert list(inv.args[-2:]) == ["-vga", "std"]

    def test_custom_port_forward(self, tmp_path, config_data):
        config_data["emulator"] = {"remote_access": {"host_port": 13389}}
        config = BuildConfig(**config_data)
        args = invocation(config, BuildLayout(tmp_path, config), Phase.CONFIGURING).args
        assert arg_after(args, "-netdev").endswith("hostfwd=tcp::13389-:3389")

    def test_rtc_localtime(self, config, layout):
        args = invocation(config, layout, Phase.INSTALLING).args
        assert arg_after(args, "-rtc") == "base=localtime"
