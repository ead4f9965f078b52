# site_trust.py
# -*- coding: utf-8 -*-
"""
Adds or removes the local root CA in the operating system trust store.

Every command runs through a CommandExecutor so tests can substitute a fake one.
Most commands are privileged (sudo) and may prompt for a password.
"""
import sys
import shutil
import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from site_certs import CA_CERT_FILENAME, CA_COMMON_NAME, default_install_dir

DEBIAN_CA_DEST = "/usr/local/share/ca-certificates/site-anywhere-ca.crt"
MACOS_SYSTEM_KEYCHAIN = "/Library/Keychains/System.keychain"

_logger = logging.getLogger("site_anywhere.trust")


class TrustStoreError(RuntimeError):
    """A trust store command failed."""


class UnsupportedEnvironmentError(TrustStoreError):
    """No trust store tool is available for this platform."""


class CommandExecutor:
    """Interface for running (privileged) trust store commands."""

    def which(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def run(self, argv: Sequence[str]) -> None:
        raise NotImplementedError


class SubprocessExecutor(CommandExecutor):
    def __init__(self, timeout: Optional[float] = 120, logger: Optional[logging.Logger] = None):
        self.timeout = timeout
        self.logger = logger or _logger

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(self, argv: Sequence[str]) -> None:
        self.logger.debug("TrustStore: running %s", " ".join(argv))
        try:
            subprocess.run(list(argv), check=True, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip() or f"exit status {e.returncode}"
            raise TrustStoreError(f"{argv[0]} failed: {detail}") from e
        except subprocess.TimeoutExpired as e:
            raise TrustStoreError(f"{' '.join(argv)} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise TrustStoreError(f"required system tool missing: {argv[0]}") from e


class TrustStoreInstaller:
    def __init__(self, install_dir: Optional[Path] = None, executor: Optional[CommandExecutor] = None,
                 platform: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.install_dir = Path(install_dir) if install_dir is not None else default_install_dir()
        self.executor = executor or SubprocessExecutor()
        self.platform = platform or sys.platform
        self.logger = logger or _logger

    @property
    def cert_path(self) -> Path:
        return self.install_dir / CA_CERT_FILENAME

    def install(self, cert_path: Optional[Path] = None) -> None:
        cert = str(cert_path or self.cert_path)
        for argv in self._install_commands(cert):
            self.executor.run(argv)
        self.logger.info("TrustStore: %s added to the system trust store.", cert)

    def uninstall(self) -> None:
        """
        Removes the CA from the trust store, then deletes the whole install directory.
        The directory is deleted even when the removal command fails.

        Without rootCA.pem only the removals that work by destination path or
        common name (Debian, Windows) are attempted, and their failures are logged.
        """
        if not self.cert_path.exists():
            try:
                for argv in self._uninstall_commands(None):
                    self.executor.run(argv)
            except TrustStoreError as e:
                self.logger.warning("TrustStore: cleanup without %s failed: %s", self.cert_path, e)
            self.logger.info("TrustStore: nothing to remove (%s not found).", self.cert_path)
            shutil.rmtree(self.install_dir, ignore_errors=True)
            return

        try:
            for argv in self._uninstall_commands(str(self.cert_path)):
                self.executor.run(argv)
            self.logger.info("TrustStore: root CA removed from the system trust store.")
        finally:
            shutil.rmtree(self.install_dir, ignore_errors=True)
            self.logger.info("TrustStore: removed %s", self.install_dir)

    def _install_commands(self, cert: str) -> List[List[str]]:
        if self.platform == "darwin":
            return [["sudo", "security", "add-trusted-cert", "-d", "-r", "trustRoot",
                     "-k", MACOS_SYSTEM_KEYCHAIN, cert]]
        if self.platform == "win32":
            return [["certutil", "-addstore", "-user", "Root", cert]]
        if self.platform.startswith("linux"):
            tool = self._linux_tool()
            if tool == "update-ca-certificates":
                return [["sudo", "cp", cert, DEBIAN_CA_DEST],
                        ["sudo", "update-ca-certificates", "--fresh"]]
            return [["sudo", "trust", "anchor", "--store", cert]]
        raise UnsupportedEnvironmentError(f"unsupported platform: {self.platform}")

    def _uninstall_commands(self, cert: Optional[str]) -> List[List[str]]:
        # cert is None when the local copy is gone; skip commands that need it
        if self.platform == "darwin":
            return [["sudo", "security", "remove-trusted-cert", "-d", cert]] if cert else []
        if self.platform == "win32":
            return [["certutil", "-delstore", "-user", "Root", CA_COMMON_NAME]]
        if self.platform.startswith("linux"):
            tool = self._linux_tool()
            if tool == "update-ca-certificates":
                return [["sudo", "rm", "-f", DEBIAN_CA_DEST],
                        ["sudo", "update-ca-certificates", "--fresh"]]
            return [["sudo", "trust", "anchor", "--remove", cert]] if cert else []
        raise UnsupportedEnvironmentError(f"unsupported platform: {self.platform}")

    def _linux_tool(self) -> str:
        # Debian/Ubuntu first, then RHEL/Fedora/Arch
        for tool in ("update-ca-certificates", "trust"):
            if self.executor.which(tool):
                return tool
        raise UnsupportedEnvironmentError(
            "no supported trust store manager found (need update-ca-certificates or trust)")
