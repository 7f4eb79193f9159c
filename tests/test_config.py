"""Tests for configuration loading and the work directory layout."""

import json
from pathlib import Path

import pytest
import yaml

from win2cloud.config import (
    BuildConfig,
    BuildLayout,
    DiskFormat,
    load_config,
    parse_size,
    write_example_config,
)
from win2cloud.errors import ConfigNotFound, ConfigParseError

EXAMPLE = Path(__file__).resolve().parent.parent / "configs" / "example_build.yaml"


def write_yaml(tmp_path, data, name="build.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


# ═══════════════════════════════════════════════════════════════════
#  Sizes
# ═══════════════════════════════════════════════════════════════════

class TestParseSize:
    @pytest.mark.parametrize("spec,expected", [
        ("150G", 150 * 1024**3),
        ("512M", 512 * 1024**2),
        ("1.5T", int(1.5 * 1024**4)),
        ("64k", 64 * 1024),
    ])
    def test_valid(self, spec, expected):
        assert parse_size(spec) == expected

    @pytest.mark.parametrize("spec", ["150GB", "abc", "150", "G", "-5G"])
    def test_invalid(self, spec):
        with pytest.raises(ValueError):
            parse_size(spec)


# ═══════════════════════════════════════════════════════════════════
#  Loading
# ═══════════════════════════════════════════════════════════════════

class TestLoadConfig:
    def test_minimal_document(self, tmp_path, config_data):
        config = load_config(write_yaml(tmp_path, config_data))

        assert config.vm.name == "win-test"
        assert config.vm.memory_mb == 4096
        assert config.disk.size_bytes == 150 * 1024**3
        assert config.disk.format is DiskFormat.QCOW2
        assert config.output.formats == [DiskFormat.RAW]
        assert config.output.compression.enabled is False
        assert config.emulator.binary == "qemu-system-x86_64"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigNotFound):
            load_config(tmp_path / "nope.yaml")

    def test_missing_disk_size_names_field(self, tmp_path, config_data):
        del config_data["disk"]["size"]
        with pytest.raises(ConfigParseError) as exc:
            load_config(write_yaml(tmp_path, config_data))
        assert exc.value.field == "disk.size"
        assert "field required" in str(exc.value)

    def test_missing_memory_names_field(self, tmp_path, config_data):
        del config_data["vm"]["memory_mb"]
        with pytest.raises(ConfigParseError) as exc:
            load_config(write_yaml(tmp_path, config_data))
        assert exc.value.field == "vm.memory_mb"

    @pytest.mark.parametrize("size", ["150GB", "abc", "0G"])
    def test_invalid_size(self, tmp_path, config_data, size):
        config_data["disk"]["size"] = size
        with pytest.raises(ConfigParseError) as exc:
            load_config(write_yaml(tmp_path, config_data))
        assert exc.value.field == "disk.size"

    def test_unknown_format_rejected(self, tmp_path, config_data):
        config_data["output"]["formats"] = ["raw", "vdi"]
        with pytest.raises(ConfigParseError) as exc:
            load_config(write_yaml(tmp_path, config_data))
        assert exc.value.field.startswith("output.formats")

    def test_zero_cpus_rejected(self, tmp_path, config_data):
        config_data["vm"]["cpus"] = 0
        with pytest.raises(ConfigParseError) as exc:
            load_config(write_yaml(tmp_path, config_data))
        assert exc.value.field == "vm.cpus"

    def test_duplicate_formats_collapsed_in_order(self, tmp_path, config_data):
        config_data["output"]["formats"] = ["vhd", "raw", "vhd"]
        config = load_config(write_yaml(tmp_path, config_data))
        assert config.output.formats == [DiskFormat.VHD, DiskFormat.RAW]

    def test_unknown_keys_ignored(self, tmp_path, config_data):
        config_data["vm"]["colour"] = "blue"
        config_data["extras"] = {"anything": 1}
        config = load_config(write_yaml(tmp_path, config_data))
        assert config.vm.cpus == 2

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("vm: [unclosed\n")
        with pytest.raises(ConfigParseError):
            load_config(path)

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigParseError, match="mapping"):
            load_config(path)

    def test_json_document(self, tmp_path, config_data):
        path = tmp_path / "build.json"
        path.write_text(json.dumps(config_data))
        assert load_config(path).vm.name == "win-test"

    def test_shipped_example_loads(self):
        config = load_config(EXAMPLE)
        assert config.output.compression.enabled
        assert config.output.compression.scheme_for(DiskFormat.VHD) == "zip"
        assert config.output.compression.scheme_for(DiskFormat.RAW) == "gzip"


# ═══════════════════════════════════════════════════════════════════
#  Saving
# ═══════════════════════════════════════════════════════════════════

class TestSave:
    @pytest.mark.parametrize("name", ["saved.yaml", "saved.json"])
    def test_saved_config_reloads(self, tmp_path, config, name):
        path = config.save(tmp_path / name)
        assert load_config(path) == config

    def test_write_example_config(self, tmp_path):
        path = write_example_config(tmp_path / "example.yaml")
        config = BuildConfig.from_yaml(path)
        assert config.vm.name == "win2022"
        assert config.output.formats == [DiskFormat.VHD, DiskFormat.RAW]


# ═══════════════════════════════════════════════════════════════════
#  Immutability
# ═══════════════════════════════════════════════════════════════════

class TestFrozen:
    def test_config_cannot_change_during_a_run(self, config):
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            config.vm.memory_mb = 1
        with pytest.raises(ValidationError):
            config.disk = None
        assert config.vm.memory_mb == 4096


# ═══════════════════════════════════════════════════════════════════
#  Layout
# ═══════════════════════════════════════════════════════════════════

class TestBuildLayout:
    def test_paths_derive_from_work_dir(self, tmp_path, config):
        layout = BuildLayout(tmp_path, config)

        assert layout.disk_path("win") == tmp_path.resolve() / "disks" / "win.qcow2"
        assert layout.output_path("win", DiskFormat.VHD) == tmp_path.resolve() / "output" / "win.vhd"
        assert layout.transcript_path("win", "installing") == tmp_path.resolve() / "logs" / "win-installing.log"
        assert layout.install_media == tmp_path.resolve() / "media" / "windows.iso"

    def test_absolute_paths_kept(self, tmp_path, config_data):
        media_dir = tmp_path / "elsewhere"
        config_data["media"] = {"install": str(media_dir / "win.iso")}
        config_data["output"]["dir"] = str(tmp_path / "out")
        layout = BuildLayout(tmp_path / "work", BuildConfig(**config_data))

        assert layout.install_media == media_dir / "win.iso"
        assert layout.output_dir == tmp_path / "out"
