from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from src.sandbox_backends import config
from src.sandbox_backends.base import BootImage
from src.sandbox_backends.errors import SandboxConfigError
from src.templates.registry import Environment, runtime_environment, template_image_id

logger = logging.getLogger(__name__)

ImageSource = Literal[
    "recovery_snapshot",
    "fragment_snapshot",
    "template_snapshot",
    "base_image",
]


@dataclass(frozen=True)
class ImageRequest:
    recovery_snapshot_id: str | None = None
    fragment_snapshot_id: str | None = None
    template_name: str | None = None
    environment: Environment | None = None


@dataclass(frozen=True)
class ImageSelection:
    image: BootImage
    source: ImageSource
    # True when the image already holds the project's full state, so no
    # fragment/git restore should run afterwards.
    skip_restore: bool
    reason: str


def select_boot_image(req: ImageRequest) -> ImageSelection:
    """Pick the image a new sandbox boots from. First match wins:

    1. explicit recovery snapshot (operator override)
    2. snapshot bound to the target fragment
    3. snapshot of the requested template for the current environment
    4. generic base image, only when no template was requested

    A requested template without a snapshot raises SandboxConfigError rather
    than silently booting an unconfigured base image.
    """
    recovery = (req.recovery_snapshot_id or "").strip()
    if recovery:
        logger.info("Boot image: recovery snapshot %s", recovery)
        return ImageSelection(
            image=BootImage(recovery),
            source="recovery_snapshot",
            skip_restore=True,
            reason="explicit recovery snapshot supplied",
        )

    fragment_snap = (req.fragment_snapshot_id or "").strip()
    if fragment_snap:
        logger.info("Boot image: fragment snapshot %s", fragment_snap)
        return ImageSelection(
            image=BootImage(fragment_snap),
            source="fragment_snapshot",
            skip_restore=True,
            reason="fragment has a bound filesystem snapshot",
        )

    template = (req.template_name or "").strip()
    env = req.environment or runtime_environment()
    if template:
        image_id = template_image_id(template, env)
        if not image_id:
            raise SandboxConfigError(
                f"Template {template!r} has no snapshot for environment {env!r}",
                operation="select_boot_image",
            )
        logger.info("Boot image: template %s snapshot %s (%s)", template, image_id, env)
        return ImageSelection(
            image=BootImage(image_id),
            source="template_snapshot",
            skip_restore=False,
            reason=f"template {template} snapshot for {env}",
        )

    base = config.base_image()
    logger.info("Boot image: base image %s", base)
    return ImageSelection(
        image=BootImage(base, from_registry=True),
        source="base_image",
        skip_restore=False,
        reason="no snapshot or template requested",
    )
