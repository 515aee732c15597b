"""Helm chart installer for the cluster's base releases (monitoring, GitOps)."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml

from recon.config import ChartRelease
from recon.errors import ReconcileError, TransientInfraError
from recon.retry import Backoff, call_with_retry

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass
class InstallResult:
    release: str
    status: str  # installed | upgraded | unchanged | failed
    version: Optional[str] = None
    previous_version: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ChartInstaller:
    """
    Install-or-noop for pinned Helm releases.

    A release is left alone when the deployed chart version and user values
    already match; otherwise it is installed or upgraded in place.
    """

    def __init__(
        self,
        helm_path: str = "helm",
        runner: Optional[Runner] = None,
        retry: Optional[Backoff] = None,
        timeout_s: float = 900.0,
    ) -> None:
        self.helm_path = helm_path
        self._run = runner or subprocess.run
        self.retry = retry or Backoff(attempts=3, base_delay_s=5.0, max_delay_s=60.0)
        self.timeout_s = timeout_s

    def _helm(self, *args: str) -> subprocess.CompletedProcess:
        cmd = [self.helm_path, *args]
        try:
            return self._run(cmd, check=False, capture_output=True, text=True, timeout=self.timeout_s)
        except subprocess.TimeoutExpired as e:
            raise TransientInfraError(f"{' '.join(cmd[:3])} timed out after {e.timeout}s")
        except FileNotFoundError:
            raise ReconcileError(f"helm binary not found: {self.helm_path}")
        except OSError as e:
            raise TransientInfraError(f"{' '.join(cmd[:3])} failed: {e}")

    def deployed(self, release: ChartRelease) -> Optional[Dict[str, Any]]:
        """Return the deployed release record, or None when it is not installed."""
        result = self._helm("status", release.name, "--namespace", release.namespace, "-o", "json")
        if result.returncode != 0:
            if "not found" in (result.stderr or ""):
                return None
            raise TransientInfraError(f"helm status {release.name} exited {result.returncode}: {(result.stderr or '').strip()}")
        try:
            return json.loads(result.stdout or "{}")
        except ValueError as e:
            raise ReconcileError(f"unreadable helm status for {release.name}: {e}")

    def deployed_values(self, release: ChartRelease) -> Dict[str, Any]:
        result = self._helm("get", "values", release.name, "--namespace", release.namespace, "-o", "json")
        if result.returncode != 0:
            raise TransientInfraError(f"helm get values {release.name} exited {result.returncode}: {(result.stderr or '').strip()}")
        try:
            return json.loads(result.stdout or "null") or {}
        except ValueError as e:
            raise ReconcileError(f"unreadable values for {release.name}: {e}")

    def _upgrade(self, release: ChartRelease) -> None:
        fd, values_path = tempfile.mkstemp(prefix=f"{release.name}-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(release.values or {}, f, default_flow_style=False)
            args = [
                "upgrade", "--install", release.name, release.chart,
                "--version", release.version,
                "--namespace", release.namespace,
                "--create-namespace",
                "-f", values_path,
            ]
            if release.repo:
                args += ["--repo", release.repo]
            if release.wait:
                args += ["--wait", "--timeout", release.timeout]
            result = self._helm(*args)
        finally:
            os.unlink(values_path)
        if result.returncode != 0:
            raise ReconcileError(f"helm upgrade {release.name} exited {result.returncode}: {(result.stderr or '').strip()}")

    def ensure(self, release: ChartRelease) -> InstallResult:
        """
        Bring one release to its pinned chart version and values.

        Returns:
            InstallResult; helm failures are reported as status "failed"
        """
        try:
            current = call_with_retry(lambda: self.deployed(release), self.retry, describe=f"helm status {release.name}")
            previous = None
            if current is not None:
                previous = ((current.get("chart") or {}).get("metadata") or {}).get("version")
                healthy = (current.get("info") or {}).get("status") == "deployed"
                if healthy and previous == release.version:
                    values = call_with_retry(
                        lambda: self.deployed_values(release), self.retry, describe=f"helm get values {release.name}"
                    )
                    if values == (release.values or {}):
                        logger.info(f"Release {release.name} already at {release.version}")
                        return InstallResult(release.name, "unchanged", release.version, previous)
            call_with_retry(lambda: self._upgrade(release), self.retry, describe=f"helm upgrade {release.name}")
        except ReconcileError as e:
            logger.error(f"Release {release.name} failed: {e}")
            return InstallResult(release.name, "failed", release.version, message=str(e))

        status = "upgraded" if current is not None else "installed"
        logger.info(f"Release {release.name} {status} at {release.chart} {release.version}")
        return InstallResult(release.name, status, release.version, previous)

    def ensure_all(self, releases: Iterable[ChartRelease]) -> List[InstallResult]:
        return [self.ensure(release) for release in releases]
