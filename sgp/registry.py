from __future__ import annotations

import re
from dataclasses import dataclass, replace

from . import db
from .settings import DeployConfig, DIGEST_RE, settings, validate_version


ROLES = ("proxy", "api", "web")

REPOSITORY_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


class ImmutableTagError(RuntimeError):
    pass


@dataclass(frozen=True)
class RegistryRepository:
    """One repository per container role, scoped to (project, region)."""

    project: str
    region: str
    repository_id: str
    role: str

    @property
    def host(self) -> str:
        return settings.registry_host.format(region=self.region)

    @property
    def path(self) -> str:
        return f"{self.host}/{self.project}/{self.repository_id}"


@dataclass(frozen=True)
class ImageRef:
    host: str
    project: str
    repository: str
    image: str
    version: str

    def __str__(self) -> str:
        sep = "@" if DIGEST_RE.match(self.version) else ":"
        return f"{self.host}/{self.project}/{self.repository}/{self.image}{sep}{self.version}"

    @property
    def name(self) -> str:
        """Reference without the tag or digest."""
        return f"{self.host}/{self.project}/{self.repository}/{self.image}"

    def with_version(self, version: str) -> "ImageRef":
        validate_version(version)
        return replace(self, version=version)

    @classmethod
    def parse(cls, text: str) -> "ImageRef":
        if "@" in text:
            path, version = text.rsplit("@", 1)
        else:
            path, sep, version = text.rpartition(":")
            if not sep or "/" in version:
                raise ValueError(f"Image reference has no version: {text!r}")
        parts = path.split("/")
        if len(parts) != 4:
            raise ValueError(f"Expected host/project/repository/image, got {path!r}")
        validate_version(version)
        return cls(host=parts[0], project=parts[1], repository=parts[2], image=parts[3], version=version)


def repository_id(role: str) -> str:
    return f"{settings.app_name}-{role}-repo"


def image_name(role: str) -> str:
    return f"{settings.app_name}-{role}"


def repositories_for(cfg: DeployConfig) -> list[RegistryRepository]:
    return [
        RegistryRepository(project=cfg.project, region=cfg.region, repository_id=repository_id(role), role=role)
        for role in ROLES
    ]


def image_ref(cfg: DeployConfig, role: str, version: str) -> ImageRef:
    if role not in ROLES:
        raise ValueError(f"Unknown role {role!r}")
    validate_version(version)
    repo = RegistryRepository(project=cfg.project, region=cfg.region, repository_id=repository_id(role), role=role)
    return ImageRef(host=repo.host, project=cfg.project, repository=repo.repository_id, image=image_name(role), version=version)


def is_floating(ref: ImageRef) -> bool:
    """The proxy's stable tag is the only tag allowed to move."""
    return ref.version == settings.proxy_tag and ref.image == image_name("proxy")


def ensure_tag_unused(ref: ImageRef) -> None:
    """Refuse to build and push over a tag that already exists.

    Called before anything reaches the registry, so an existing tag is
    never overwritten.
    """
    if DIGEST_RE.match(ref.version):
        raise ValueError(f"Cannot push to a digest reference: {ref}")
    if is_floating(ref):
        return
    existing = db.get_image_digest(ref.name, ref.version)
    if existing is not None:
        raise ImmutableTagError(f"Tag {ref} already points at {existing}; push a new tag instead.")


def record_tag(ref: ImageRef, digest: str) -> None:
    """Remember which digest a tag was pushed with.

    A tag may be recorded again with the same digest; pointing it at a
    different digest is refused unless the tag floats.
    """
    if not DIGEST_RE.match(digest):
        raise ValueError(f"Invalid digest {digest!r}")
    if DIGEST_RE.match(ref.version):
        return
    existing = db.get_image_digest(ref.name, ref.version)
    if existing is None:
        db.insert_image_tag(ref.name, ref.version, digest)
        return
    if existing == digest:
        return
    if is_floating(ref):
        db.move_image_tag(ref.name, ref.version, digest)
        return
    raise ImmutableTagError(f"Tag {ref} already points at {existing}; push a new tag instead.")
