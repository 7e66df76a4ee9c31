"""
Provider that clones a remote git repository before scanning it.

The clone directory is created and removed by the orchestrator; this
provider only fills it.
"""

import base64
import logging
import os
import subprocess
import threading
from typing import Iterator, Optional

from pipeaudit.errors import FetchError
from pipeaudit.model import PipelineDocument
from pipeaudit.providers import FetchedItem, check_cancelled
from pipeaudit.providers.local import LocalRepository

logger = logging.getLogger(__name__)

CLONE_TIMEOUT_SECONDS = 300

SCM_BASE_URLS = {
    "github": "https://github.com",
    "gitlab": "https://gitlab.com",
}

# HTTP basic-auth user names the SCMs accept alongside an access token.
TOKEN_USERS = {
    "github": "x-access-token",
    "gitlab": "oauth2",
}


def repo_name_from_url(url: str) -> str:
    name = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return name[:-len(".git")] if name.endswith(".git") else name


def clone_url(repo: str, scm: str = "github", base_url: Optional[str] = None) -> str:
    """
    Clone URL for a repository given as a URL or as an '<org>/<repo>' slug.

    Raises:
        ValueError: If repo is neither a URL nor a slug, or scm is unknown.
    """
    if "://" in repo or repo.startswith("git@"):
        return repo
    if scm not in SCM_BASE_URLS:
        raise ValueError(f"Unknown SCM '{scm}'. Valid: {', '.join(SCM_BASE_URLS)}")
    slug = repo.strip("/")
    if slug.count("/") < 1 or any(not part for part in slug.split("/")):
        raise ValueError(f"Expected '<org>/<repo>' or a clone URL, got '{repo}'")
    base = (base_url or SCM_BASE_URLS[scm]).rstrip("/")
    return f"{base}/{slug}.git"


def _auth_env(token: str, scm: str) -> dict[str, str]:
    """Git config passed through the environment so the token stays out of argv."""
    user = TOKEN_USERS.get(scm, TOKEN_USERS["github"])
    credentials = base64.b64encode(f"{user}:{token}".encode()).decode()
    return {
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "http.extraHeader",
        "GIT_CONFIG_VALUE_0": f"Authorization: Basic {credentials}",
    }


class GitRepository:
    """A remote repository fetched with a shallow 'git clone'."""

    needs_clone = True

    def __init__(
        self,
        url: str,
        name: Optional[str] = None,
        ref: Optional[str] = None,
        token: Optional[str] = None,
        scm: str = "github",
    ):
        self.url = url
        self.ref = ref
        self.scm = scm
        self.name = name or repo_name_from_url(url)
        self._token = token
        self._checkout: Optional[LocalRepository] = None

    def _clone(self, workdir: str) -> None:
        cmd = ["git", "clone", "--depth", "1", "--quiet"]
        if self.ref:
            cmd += ["--branch", self.ref]
        cmd += [self.url, workdir]

        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        if self._token:
            env.update(_auth_env(self._token, self.scm))
        logger.info("Cloning %s into %s (authenticated: %s)", self.url, workdir, bool(self._token))
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=CLONE_TIMEOUT_SECONDS, env=env)
        except subprocess.CalledProcessError as e:
            raise FetchError(f"git clone failed for {self.url}: {(e.stderr or '').strip()}", repository=self.name) from e
        except subprocess.TimeoutExpired as e:
            raise FetchError(
                f"git clone of {self.url} timed out after {CLONE_TIMEOUT_SECONDS}s", repository=self.name,
            ) from e
        except OSError as e:
            raise FetchError(f"git clone failed for {self.url}: {e}", repository=self.name) from e

    def documents(self, workdir: Optional[str], cancel: threading.Event) -> Iterator[FetchedItem]:
        if workdir is None:
            raise FetchError("GitRepository needs a working directory", repository=self.name)
        check_cancelled(cancel, self.name)
        self._clone(workdir)
        self._checkout = LocalRepository(workdir, name=self.name)
        yield from self._checkout.documents(None, cancel)

    def read_file(self, rel_path: str) -> Optional[PipelineDocument]:
        if self._checkout is None:
            return None
        return self._checkout.read_file(rel_path)
