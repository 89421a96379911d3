from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from src.sandbox_backends import config

logger = logging.getLogger(__name__)

Environment = Literal["main", "dev"]

DEFAULT_TEMPLATE = "database-vite-template"


@dataclass(frozen=True)
class TemplateSpec:
    name: str
    label: str
    # Provider image ids of the pre-built filesystem snapshot. `dev_image_id`
    # falls back to `image_id` when unset.
    image_id: str | None
    dev_image_id: str | None = None


_DEFAULT_SPECS: dict[str, TemplateSpec] = {
    "database-vite-template": TemplateSpec(
        name="database-vite-template",
        label="Vite + React with database",
        image_id="im-BtQaOaga9rKaqJEQ06TJBP",
        dev_image_id="im-oOBbQUYV31mU1DAf7YvKug",
    ),
    "database-vite-todo-template": TemplateSpec(
        name="database-vite-todo-template",
        label="Todo app",
        image_id="im-WX5emDijDwwnj7Csp9yVCl",
        dev_image_id="im-r8do7zgmgsfQ6NAnZ16oeD",
    ),
    "database-vite-calculator-template": TemplateSpec(
        name="database-vite-calculator-template",
        label="Calculator",
        image_id="im-dCKhTNXCYzwmrd7a0dEzXr",
        dev_image_id="im-lxSoOCM2qJ0khoFFmdWtFG",
    ),
    "database-vite-content-sharing-template": TemplateSpec(
        name="database-vite-content-sharing-template",
        label="Content sharing",
        image_id="im-qA61sJrU8vEVk9pqFOa2rG",
        dev_image_id="im-VNaAvOwLiaRFuUJTbJGRhl",
    ),
    "database-vite-landing-page-template": TemplateSpec(
        name="database-vite-landing-page-template",
        label="Landing page",
        image_id="im-3R2HBe39WKlLcTvUMsAwwq",
        dev_image_id="im-O3dBPWUERCMx1CffqIw6vL",
    ),
    "database-vite-tracker-template": TemplateSpec(
        name="database-vite-tracker-template",
        label="Tracker",
        image_id="im-bcowjZ8dSXzGSxX6nyyvQJ",
        dev_image_id="im-2ipi7zguRIrnWUod2KsjQ1",
    ),
    "tanstack-template": TemplateSpec(
        name="tanstack-template",
        label="TanStack Start",
        image_id="im-5KUREocgh08oG0OXAFxAwH",
        dev_image_id="im-p8X7Nediv8nUXPe2v3EKnU",
    ),
}

# First match wins.
_TEMPLATE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("database-vite-todo-template", ("todo", "task", "tasks")),
    ("database-vite-calculator-template", ("calculator",)),
    ("database-vite-content-sharing-template", ("content", "share", "sharing")),
    ("database-vite-landing-page-template", ("landing", "marketing", "hero")),
    ("database-vite-tracker-template", ("tracker", "tracking", "habit", "budget")),
]


def runtime_environment() -> Environment:
    return "dev" if config.runtime_mode() == "development" else "main"


def _overrides() -> dict[str, Any]:
    """SANDBOX_TEMPLATE_IMAGE_MAP_JSON: {name: id} or {name: {"main": id, "dev": id}}."""
    raw = (os.environ.get("SANDBOX_TEMPLATE_IMAGE_MAP_JSON") or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring invalid SANDBOX_TEMPLATE_IMAGE_MAP_JSON")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _spec_with_overrides(name: str) -> TemplateSpec | None:
    spec = _DEFAULT_SPECS.get(name)
    ov = _overrides().get(name)
    if ov is None:
        return spec
    base = spec or TemplateSpec(name=name, label=name, image_id=None)
    if isinstance(ov, str):
        return TemplateSpec(name=name, label=base.label, image_id=ov.strip() or None)
    if isinstance(ov, dict):
        main = ov.get("main", base.image_id)
        dev = ov.get("dev", base.dev_image_id)
        return TemplateSpec(
            name=name,
            label=base.label,
            image_id=str(main).strip() if main else None,
            dev_image_id=str(dev).strip() if dev else None,
        )
    return spec


def available_templates() -> list[str]:
    return sorted(set(_DEFAULT_SPECS) | set(_overrides()))


def template_spec(name: str | None) -> TemplateSpec | None:
    n = (name or "").strip()
    if not n:
        return None
    return _spec_with_overrides(n)


def template_image_id(name: str | None, env: Environment | None = None) -> str | None:
    spec = template_spec(name)
    if spec is None:
        return None
    e = env or runtime_environment()
    if e == "dev" and spec.dev_image_id:
        return spec.dev_image_id
    return spec.image_id or None


def has_template_snapshot(name: str | None, env: Environment | None = None) -> bool:
    return template_image_id(name, env) is not None


def infer_template_from_files(files: Mapping[str, str]) -> str | None:
    """Guess the template a fragment was generated from, by keyword."""
    names_text = " ".join(files.keys()).lower()

    package_text = ""
    raw_pkg = files.get("package.json")
    if raw_pkg:
        try:
            pkg = json.loads(raw_pkg)
        except json.JSONDecodeError:
            package_text = raw_pkg.lower()
        else:
            if isinstance(pkg, dict):
                deps = {
                    **(pkg.get("dependencies") or {}),
                    **(pkg.get("devDependencies") or {}),
                }
                package_text = (
                    f"{pkg.get('name') or ''} {pkg.get('description') or ''} "
                    + " ".join(deps)
                ).lower()

    readme_text = (files.get("README.md") or "").lower()
    combined = f"{names_text} {package_text} {readme_text}"

    for template, keywords in _TEMPLATE_KEYWORDS:
        if any(k in combined for k in keywords):
            return template
    return None
