"""Build and CI collaborators.

The build step turns (project, region, version) into a pushed image tag;
the pipeline builds proxy, api and web one after another and then hands
the fresh version and the three references to a deploy callback.
"""
from __future__ import annotations

import logging
import os
from typing import Callable, Protocol

from . import registry
from .settings import DeployConfig, settings

logger = logging.getLogger(__name__)

BUILD_ORDER = ("proxy", "api", "web")


class ImageBuilder(Protocol):
    def build_image(self, context_dir: str, tag: str, dockerfile: str = "Dockerfile") -> str: ...

    def push_image(self, tag: str) -> str: ...


def build_context(role: str) -> tuple[str, str]:
    """(context directory, Dockerfile path relative to it) for a role.

    The proxy image packages this library, so its context is the build root.
    """
    if role == "proxy":
        return settings.build_root, os.path.join("services", "proxy", "Dockerfile")
    return os.path.join(settings.build_root, "services", role), "Dockerfile"


def build_and_push(cfg: DeployConfig, role: str, version: str, builder: ImageBuilder) -> str:
    """Build the role's image, push it, record the tag and return the reference string."""
    ref = registry.image_ref(cfg, role, version)
    tag = str(ref)
    registry.ensure_tag_unused(ref)
    logger.info(f"Building {role} image {tag}")
    context, dockerfile = build_context(role)
    builder.build_image(context, tag, dockerfile)
    digest = builder.push_image(tag)
    registry.record_tag(ref, digest)
    logger.info(f"Pushed {tag} ({digest})")
    return tag


def run_pipeline(
    cfg: DeployConfig,
    builder: ImageBuilder,
    deploy: Callable[[str, dict[str, str]], object] | None = None,
) -> dict[str, str]:
    """Build proxy (stable tag), api and web (``cfg.version``) then deploy.

    Every tag is checked before the first build, so a version that was
    already pushed fails without touching the registry. Stops at the first
    failing build; nothing is deployed in that case.
    """
    versions = {role: settings.proxy_tag if role == "proxy" else cfg.version for role in BUILD_ORDER}
    for role, version in versions.items():
        registry.ensure_tag_unused(registry.image_ref(cfg, role, version))

    refs: dict[str, str] = {}
    for role, version in versions.items():
        refs[role] = build_and_push(cfg, role, version, builder)
    if deploy is not None:
        deploy(cfg.version, refs)
    return refs
