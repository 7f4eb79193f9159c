"""Working disk provisioning."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from win2cloud.config import BuildConfig, BuildLayout
from win2cloud.converter.disk import DiskImageTool
from win2cloud.errors import DiskCreateError
from win2cloud.pipeline.operator import Operator
from win2cloud.utils.logging import get_logger
from win2cloud.utils.subprocess import CommandError

logger = get_logger(__name__)


class DiskProvisioner:
    """Creates the working disk, or reuses the one left by a previous run.

    An existing disk is the only state a build carries across runs. It is
    kept unless ``recreate`` is set or the operator asks to start from
    scratch; an unattended run never deletes it on its own.
    Creation is never retried: a failed create may leave a partial file.
    """

    def __init__(self, tool: DiskImageTool, layout: BuildLayout, operator: Optional[Operator] = None,
                 recreate: bool = False):
        self.tool = tool
        self.layout = layout
        self.operator = operator or Operator()
        self.recreate = recreate

    def provision(self, vm_name: str, config: BuildConfig) -> Path:
        path = self.layout.disk_path(vm_name)

        if path.exists():
            recreate = self.recreate or self.operator.confirm(
                f"Working disk {path} already exists. Delete it and start over?",
                default=False,
                unattended=False,
            )
            if not recreate:
                logger.info(f"Reusing existing working disk {path}")
                return path
            logger.warning(f"Deleting existing working disk {path}")
            path.unlink()

        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Creating {config.disk.format.value} working disk {path} ({config.disk.size})")
        try:
            self.tool.create(config.disk.format, config.disk.size, path)
        except CommandError as e:
            raise DiskCreateError(
                f"Could not create {path}: {e.stderr.strip() or e}",
                exit_code=e.returncode,
            )
        return path
