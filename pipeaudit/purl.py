"""
Package references (purl-like) for external pipeline dependencies.

    pkg:githubactions/<owner>/<repo>@<ref>[#<subpath>]
    pkg:docker/<image>@<tag-or-digest>
    pkg:gitlab/<project>@<ref>

A reference is pinned only when its ref is an immutable content hash:
a 40 lowercase hex char commit SHA (actions, GitLab includes) or
"sha256:" + 64 lowercase hex chars (container images).
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

GITHUB_ACTIONS = "githubactions"
DOCKER = "docker"
GITLAB = "gitlab"

COMMIT_SHA_PATTERN = re.compile(r"[0-9a-f]{40}")
DOCKER_DIGEST_PATTERN = re.compile(r"sha256:[0-9a-f]{64}")


def is_commit_sha(ref: Optional[str]) -> bool:
    return bool(ref) and COMMIT_SHA_PATTERN.fullmatch(ref) is not None


def is_docker_digest(ref: Optional[str]) -> bool:
    return bool(ref) and DOCKER_DIGEST_PATTERN.fullmatch(ref) is not None


@dataclass(frozen=True)
class PackageRef:
    """An external dependency of a pipeline."""
    scheme: str
    name: str
    ref: Optional[str] = None
    subpath: Optional[str] = None

    @property
    def purl(self) -> str:
        out = f"pkg:{self.scheme}/{self.name}"
        if self.ref:
            out += f"@{self.ref}"
        if self.subpath:
            out += f"#{self.subpath}"
        return out

    @property
    def is_pinned(self) -> bool:
        if self.scheme == DOCKER:
            return is_docker_digest(self.ref)
        return is_commit_sha(self.ref)

    @property
    def is_templated(self) -> bool:
        """True if the name or ref is an unresolved variable/expression."""
        return "$" in self.name or "$" in (self.ref or "")

    def __str__(self) -> str:
        return self.purl


def parse_purl(purl: str) -> PackageRef:
    """Parse a rendered purl string back into a PackageRef.

    Raises:
        ValueError: If the string is not of the form pkg:<scheme>/<name>...
    """
    if not purl.startswith("pkg:") or "/" not in purl:
        raise ValueError(f"Not a package reference: {purl!r}")

    body = purl[len("pkg:"):]
    subpath = None
    if "#" in body:
        body, subpath = body.split("#", 1)
    scheme, name = body.split("/", 1)
    ref = None
    if "@" in name:
        name, ref = name.rsplit("@", 1)
    if not scheme or not name:
        raise ValueError(f"Not a package reference: {purl!r}")
    return PackageRef(scheme=scheme, name=name, ref=ref or None, subpath=subpath or None)


def from_action(uses: str) -> Optional[PackageRef]:
    """Build a reference from a GitHub 'uses:' string.

    Returns None for local actions ("./path") and strings that are not
    action references at all.
    """
    uses = (uses or "").strip()
    if not uses or uses.startswith("./") or uses.startswith("../"):
        return None
    if uses.startswith("docker://"):
        return from_image(uses[len("docker://"):])

    ref = None
    if "@" in uses:
        uses, ref = uses.rsplit("@", 1)
    parts = uses.split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        logger.debug("Skipping non-action uses reference: %s", uses)
        return None

    subpath = "/".join(parts[2:]) or None
    return PackageRef(
        scheme=GITHUB_ACTIONS,
        name=f"{parts[0]}/{parts[1]}",
        ref=ref or None,
        subpath=subpath,
    )


def from_image(image: str) -> Optional[PackageRef]:
    """Build a reference from a container image string.

    "alpine:3.19" -> pkg:docker/alpine@3.19
    "ghcr.io/o/i:1@sha256:<hex>" -> pkg:docker/ghcr.io/o/i@sha256:<hex>
    """
    image = (image or "").strip()
    if not image:
        return None

    ref = None
    if "@" in image:
        image, ref = image.split("@", 1)
        image = _strip_tag(image)[0]
    else:
        image, ref = _strip_tag(image)
    if not image:
        return None
    return PackageRef(scheme=DOCKER, name=image, ref=ref or None)


def _strip_tag(image: str) -> tuple[str, Optional[str]]:
    # A colon before the last "/" is a registry port, not a tag.
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon + 1:]
    return image, None


def from_gitlab_project(project: str, ref: Optional[str] = None) -> Optional[PackageRef]:
    project = (project or "").strip().strip("/")
    if not project:
        return None
    return PackageRef(scheme=GITLAB, name=project, ref=(ref or None))


def from_gitlab_component(component: str) -> Optional[PackageRef]:
    """'gitlab.com/group/project/name@1.0' -> pkg:gitlab/group/project/name@1.0"""
    component = (component or "").strip()
    if not component:
        return None
    ref = None
    if "@" in component:
        component, ref = component.rsplit("@", 1)
    parts = component.split("/")
    # The first segment is the instance host.
    if len(parts) > 1 and "." in parts[0]:
        parts = parts[1:]
    return from_gitlab_project("/".join(parts), ref)
