"""
Diagnostics engine

Runs an ordered battery of connection checks against a ServerTarget,
classifies the run and proposes remediations. On a locked-down target the
root login is recorded as expected-disabled and never attempted.
"""

import asyncio
import base64
import hashlib
import hmac
import os
import re
import stat
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncssh

from pbdeploy.constants import (
    SETUP_DIRECTORIES,
    SSH_AUTH_SOCK_ENV,
    SSHD_CONFIG_PATH,
)
from pbdeploy.core.config_loader import DiagnosticsSettings
from pbdeploy.exceptions import (
    AuthenticationError,
    PBDeployError,
    SSHConnectionError,
    SSHError,
)
from pbdeploy.logger import DeployLogger
from pbdeploy.models.diagnostics import (
    Diagnostic,
    DiagnosticReport,
    DiagnosticStatus,
    RunStatus,
    Suggestion,
    SuggestionPriority,
)
from pbdeploy.models.server import AuthMode, ServerTarget
from pbdeploy.services.executor import CommandExecutor
from pbdeploy.utils import utcnow

CRITICAL_STEPS = {"network_connectivity", "ssh_service", "privileged_auth", "unprivileged_auth"}
AUTH_STEPS = {"privileged_auth", "unprivileged_auth"}
SAFE_FIXES = ("fix_ssh_directory", "fix_key_permissions", "accept_host_key")

STEP_CATEGORIES = {
    "network_connectivity": "network",
    "ssh_service": "network",
    "privileged_auth": "authentication",
    "unprivileged_auth": "authentication",
    "sudo_access": "configuration",
    "sshd_config": "security",
    "app_directories": "configuration",
    "ssh_agent": "local",
    "private_key": "local",
    "ssh_directory": "local",
    "known_hosts": "local",
}

BAN_SUGGESTION = (
    "Your IP is probably banned by fail2ban. From the provider's web console run the unban command"
)
BAN_COMMAND = "sudo fail2ban-client set sshd unbanip <your-ip>"


def known_hosts_entry(host: str, port: int) -> str:
    """Host pattern as OpenSSH writes it to known_hosts."""
    return host if port == 22 else f"[{host}]:{port}"


def _hashed_match(pattern: str, entry: str) -> bool:
    # |1|<base64 salt>|<base64 HMAC-SHA1(salt, host)>
    try:
        _, _, salt, digest = pattern.split("|", 3)
        expected = base64.b64decode(digest)
        actual = hmac.new(base64.b64decode(salt), entry.encode("utf-8"), hashlib.sha1).digest()
    except ValueError:
        return False
    return hmac.compare_digest(expected, actual)


def _wildcard_match(pattern: str, entry: str) -> bool:
    # OpenSSH patterns only know * and ?; brackets are literal
    regex = "".join(".*" if c == "*" else "." if c == "?" else re.escape(c) for c in pattern)
    return re.fullmatch(regex, entry, re.IGNORECASE) is not None


def host_in_known_hosts(text: str, host: str, port: int) -> bool:
    entry = known_hosts_entry(host, port)
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split()
        if fields[0].startswith("@"):
            fields = fields[1:]
        if not fields:
            continue
        for pattern in fields[0].split(","):
            if pattern.startswith("!"):
                continue
            if pattern.startswith("|1|"):
                if _hashed_match(pattern, entry):
                    return True
            elif _wildcard_match(pattern, entry):
                return True
    return False


class DiagnosticsEngine:
    """Diagnoses SSH access to a target and applies safe local fixes."""

    def __init__(
        self,
        executor: CommandExecutor,
        settings: Optional[DiagnosticsSettings] = None,
        tcp_connector: Optional[Callable[..., Awaitable[Any]]] = None,
        host_key_fetcher: Optional[Callable[..., Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[DeployLogger] = None,
    ):
        self.executor = executor
        self.settings = settings or DiagnosticsSettings()
        self._tcp_connector = tcp_connector or asyncio.open_connection
        self._host_key_fetcher = host_key_fetcher or asyncssh.get_server_host_key
        self._clock = clock
        self.logger = logger
        self._last_reachable: Dict[str, float] = {}

    @property
    def ssh_dir(self) -> Path:
        return Path(self.settings.ssh_dir).expanduser()

    @property
    def known_hosts_path(self) -> Path:
        return self.ssh_dir / "known_hosts"

    # Run

    async def diagnose(self, target: ServerTarget) -> DiagnosticReport:
        """Run every applicable check and post-process the results."""
        report = DiagnosticReport(target_id=target.id, host=target.host)
        if self.logger:
            self.logger.step(f"Diagnosing {target.name} ({target.host}:{target.port})")

        network = await self._record(report, self._check_network(target))
        if not network.is_error:
            await self._record(report, self._check_ssh_service(network))
            await self._run_remote_checks(report, target)

        if target.auth_mode == AuthMode.AGENT:
            await self._record(report, self._check_ssh_agent(target))
        if target.key_path:
            await self._record(report, self._check_private_key(target))
        await self._record(report, self._check_ssh_directory())
        await self._record(report, self._check_known_hosts(target))

        self._analyze(report, target)
        report.finished_at = utcnow()
        return report

    async def _record(self, report: DiagnosticReport, check: Awaitable[Diagnostic]) -> Diagnostic:
        started = self._clock()
        diagnostic = await check
        diagnostic = replace(diagnostic, duration_seconds=self._clock() - started)
        report.add(diagnostic)

        if self.logger:
            if diagnostic.status == DiagnosticStatus.SUCCESS:
                self.logger.success(f"{diagnostic.step}: {diagnostic.message}")
            elif diagnostic.status == DiagnosticStatus.WARNING:
                self.logger.warning(f"{diagnostic.step}: {diagnostic.message}")
            else:
                self.logger.log(f"{diagnostic.step}: {diagnostic.message}", "ERROR")
        return diagnostic

    async def _run_remote_checks(self, report: DiagnosticReport, target: ServerTarget) -> None:
        privileged = await self._record(report, self._check_auth(target, True))
        app_user_ok = False
        if target.setup_complete:
            unprivileged = await self._record(report, self._check_auth(target, False))
            app_user_ok = unprivileged.status == DiagnosticStatus.SUCCESS

        if app_user_ok:
            identity = False
        elif not target.security_locked and privileged.status == DiagnosticStatus.SUCCESS:
            identity = True
        else:
            return

        if app_user_ok:
            await self._record(report, self._check_sudo(target))
        if target.security_locked:
            await self._record(report, self._check_sshd_config(target, identity))
        if target.setup_complete:
            await self._record(report, self._check_app_directories(target, identity))

    # Remote checks

    async def _check_network(self, target: ServerTarget) -> Diagnostic:
        step = "network_connectivity"
        address = f"{target.host}:{target.port}"
        started = self._clock()
        try:
            reader, writer = await asyncio.wait_for(
                self._tcp_connector(target.host, target.port),
                timeout=self.settings.dial_timeout,
            )
        except asyncio.TimeoutError:
            return Diagnostic(
                step,
                DiagnosticStatus.ERROR,
                f"Connection to {address} timed out after {self.settings.dial_timeout}s",
                detail={"error_kind": "timeout"},
                suggestion=f"Check that the host is running and port {target.port} is open",
            )
        except ConnectionRefusedError:
            return Diagnostic(
                step,
                DiagnosticStatus.ERROR,
                f"Connection to {address} refused",
                detail={"error_kind": "refused"},
                suggestion=f"Check that sshd is listening on port {target.port}",
            )
        except OSError as e:
            return Diagnostic(
                step,
                DiagnosticStatus.ERROR,
                f"Cannot reach {address}",
                detail={"error_kind": "unreachable", "error": str(e)},
                suggestion="Check the hostname and your network connection",
            )

        latency_ms = (self._clock() - started) * 1000
        banner = ""
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=self.settings.dial_timeout)
            banner = line.decode("utf-8", "replace").strip()
        except (asyncio.TimeoutError, OSError):
            banner = ""
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        self._last_reachable[target.host] = self._clock()
        return Diagnostic(
            step,
            DiagnosticStatus.SUCCESS,
            f"{address} reachable ({latency_ms:.0f} ms)",
            detail={"latency_ms": round(latency_ms, 1), "banner": banner},
        )

    async def _check_ssh_service(self, network: Diagnostic) -> Diagnostic:
        step = "ssh_service"
        banner = network.detail.get("banner", "")
        if banner.startswith("SSH-"):
            return Diagnostic(step, DiagnosticStatus.SUCCESS, f"SSH server: {banner}", detail={"banner": banner})
        if not banner:
            return Diagnostic(
                step,
                DiagnosticStatus.WARNING,
                "No SSH banner received",
                suggestion="The port accepted the connection but sent nothing; check sshd",
            )
        return Diagnostic(
            step,
            DiagnosticStatus.ERROR,
            "Port does not speak SSH",
            detail={"banner": banner[:100]},
            suggestion="Check the configured SSH port",
        )

    async def _check_auth(self, target: ServerTarget, as_privileged: bool) -> Diagnostic:
        step = "privileged_auth" if as_privileged else "unprivileged_auth"
        username = target.username_for(as_privileged)

        if as_privileged and target.security_locked:
            return Diagnostic(
                step,
                DiagnosticStatus.SUCCESS,
                f"Login as {username} disabled by security lockdown (expected)",
                detail={"expected_disabled": True, "username": username},
            )

        try:
            await self.executor.run(target, as_privileged, "true")
        except AuthenticationError as e:
            if target.auth_mode == AuthMode.AGENT and not target.key_path:
                hint = f"Add your key to the agent (ssh-add) and make sure it is authorized for {username}"
            else:
                hint = f"Make sure {target.key_path or 'your key'} is authorized for {username}"
            return Diagnostic(
                step,
                DiagnosticStatus.ERROR,
                f"Authentication as {username} rejected",
                detail={"error_kind": "auth", "error": e.context},
                suggestion=hint,
            )
        except SSHConnectionError as e:
            return Diagnostic(
                step,
                DiagnosticStatus.ERROR,
                f"Connection as {username} failed: {e.message}",
                detail={"error_kind": "refused" if e.refused else "connection", "error": e.context},
                suggestion="Retry in a few minutes; check the server's firewall",
            )
        except SSHError as e:
            return Diagnostic(
                step,
                DiagnosticStatus.ERROR,
                f"SSH as {username} failed: {e.message}",
                detail={"error_kind": "ssh", "error": e.context},
                suggestion="Accept the server host key" if "Host key" in e.message else None,
                fix="accept_host_key" if "Host key" in e.message else None,
            )

        return Diagnostic(step, DiagnosticStatus.SUCCESS, f"Authenticated as {username}", detail={"username": username})

    async def _check_sudo(self, target: ServerTarget) -> Diagnostic:
        step = "sudo_access"
        result = await self.executor.run(target, False, "sudo -n -l /usr/bin/systemctl")
        if result.is_success:
            return Diagnostic(step, DiagnosticStatus.SUCCESS, f"{target.app_username} can manage services with sudo")
        return Diagnostic(
            step,
            DiagnosticStatus.WARNING,
            f"{target.app_username} cannot run systemctl with sudo",
            detail={"stderr": result.stderr.strip()},
            suggestion="Restore /etc/sudoers.d entry for the app user from the provider console",
        )

    async def _check_sshd_config(self, target: ServerTarget, as_privileged: bool) -> Diagnostic:
        step = "sshd_config"
        result = await self.executor.run(
            target,
            as_privileged,
            f"grep -iE '^[[:space:]]*(PasswordAuthentication|PermitRootLogin)[[:space:]]' {SSHD_CONFIG_PATH}",
        )
        values = {}
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2:
                values.setdefault(parts[0].lower(), parts[1].lower())

        loose = [
            option
            for option in ("passwordauthentication", "permitrootlogin")
            if values.get(option) != "no"
        ]
        if not loose:
            return Diagnostic(step, DiagnosticStatus.SUCCESS, "Password and root login are disabled", detail=values)
        return Diagnostic(
            step,
            DiagnosticStatus.WARNING,
            "sshd hardening is not in effect",
            detail={"settings": values, "not_disabled": loose},
            suggestion="Check /etc/ssh/sshd_config for overridden settings",
        )

    async def _check_app_directories(self, target: ServerTarget, as_privileged: bool) -> Diagnostic:
        step = "app_directories"
        dirs = " ".join(SETUP_DIRECTORIES)
        result = await self.executor.run(
            target, as_privileged, f'for d in {dirs}; do [ -d "$d" ] || echo "$d"; done'
        )
        missing = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not missing:
            return Diagnostic(step, DiagnosticStatus.SUCCESS, "PocketBase directories present")
        return Diagnostic(
            step,
            DiagnosticStatus.WARNING,
            f"{len(missing)} PocketBase directories missing",
            detail={"missing": missing},
            suggestion=f"Create them as root: mkdir -p {' '.join(missing)}",
        )

    # Local checks

    async def _check_ssh_agent(self, target: ServerTarget) -> Diagnostic:
        step = "ssh_agent"
        sock = os.environ.get(SSH_AUTH_SOCK_ENV)
        if sock and os.path.exists(sock):
            return Diagnostic(step, DiagnosticStatus.SUCCESS, "SSH agent available", detail={"socket": sock})

        status = DiagnosticStatus.WARNING if target.key_path else DiagnosticStatus.ERROR
        return Diagnostic(
            step,
            status,
            "SSH agent not available",
            detail={"socket": sock},
            suggestion='Start an agent: eval "$(ssh-agent -s)" && ssh-add',
        )

    async def _check_private_key(self, target: ServerTarget) -> Diagnostic:
        step = "private_key"
        path = Path(target.key_path).expanduser()
        if not path.is_file():
            return Diagnostic(
                step,
                DiagnosticStatus.ERROR,
                f"Private key not found: {path}",
                suggestion="Fix the server's key path",
            )

        mode = stat.S_IMODE(path.stat().st_mode)
        if mode & 0o077:
            return Diagnostic(
                step,
                DiagnosticStatus.WARNING,
                f"Private key permissions too open ({mode:o})",
                detail={"path": str(path), "mode": f"{mode:o}"},
                suggestion=f"chmod 600 {path}",
                fix="fix_key_permissions",
            )
        return Diagnostic(step, DiagnosticStatus.SUCCESS, "Private key OK", detail={"path": str(path)})

    async def _check_ssh_directory(self) -> Diagnostic:
        step = "ssh_directory"
        path = self.ssh_dir
        if not path.is_dir():
            return Diagnostic(
                step,
                DiagnosticStatus.WARNING,
                f"{path} does not exist",
                suggestion=f"mkdir -m 700 {path}",
                fix="fix_ssh_directory",
            )

        mode = stat.S_IMODE(path.stat().st_mode)
        if mode & 0o077:
            return Diagnostic(
                step,
                DiagnosticStatus.WARNING,
                f"{path} permissions too open ({mode:o})",
                detail={"mode": f"{mode:o}"},
                suggestion=f"chmod 700 {path}",
                fix="fix_ssh_directory",
            )
        return Diagnostic(step, DiagnosticStatus.SUCCESS, f"{path} OK")

    async def _check_known_hosts(self, target: ServerTarget) -> Diagnostic:
        step = "known_hosts"
        path = self.known_hosts_path
        text = path.read_text(encoding="utf-8", errors="replace") if path.is_file() else ""
        if host_in_known_hosts(text, target.host, target.port):
            return Diagnostic(step, DiagnosticStatus.SUCCESS, "Host key is known")
        return Diagnostic(
            step,
            DiagnosticStatus.WARNING,
            f"{known_hosts_entry(target.host, target.port)} not in {path}",
            suggestion="Accept the server host key",
            fix="accept_host_key",
        )

    # Post-processing

    def _ban_suspected(self, report: DiagnosticReport, target: ServerTarget) -> bool:
        network = report.get("network_connectivity")
        if network and network.detail.get("error_kind") == "refused":
            seen = self._last_reachable.get(target.host)
            return seen is not None and self._clock() - seen <= self.settings.ban_detection_window

        # Reachable moments ago in this run, then refused
        return any(
            d.step in AUTH_STEPS and d.detail.get("error_kind") == "refused"
            for d in report.diagnostics
        )

    def _analyze(self, report: DiagnosticReport, target: ServerTarget) -> None:
        errors = report.errors
        if any(d.step in CRITICAL_STEPS for d in errors):
            report.status = RunStatus.ERROR
        elif errors or report.warnings:
            report.status = RunStatus.DEGRADED
        else:
            report.status = RunStatus.HEALTHY

        suggestions: List[Suggestion] = []
        banned = self._ban_suspected(report, target)
        network = report.get("network_connectivity")

        if banned:
            report.pattern = "probable_ban"
            report.critical_issues.append("fail2ban_ip_ban")
            suggestions.append(
                Suggestion(
                    step="network_connectivity",
                    text=BAN_SUGGESTION,
                    priority=SuggestionPriority.CRITICAL,
                    category="security",
                    command=BAN_COMMAND,
                )
            )
        elif network and network.is_error:
            report.pattern = "network_connectivity"
            report.critical_issues.append("host_unreachable")
        elif any(d.step in AUTH_STEPS for d in errors):
            report.pattern = "authentication_failure"
            report.critical_issues.append("authentication_failed")
        elif errors or report.warnings:
            report.pattern = "configuration_warnings"
        else:
            report.pattern = "healthy"

        for diagnostic in report.diagnostics:
            if not diagnostic.suggestion or diagnostic.status == DiagnosticStatus.SUCCESS:
                continue
            if diagnostic.is_error:
                priority = SuggestionPriority.HIGH if diagnostic.step in CRITICAL_STEPS else SuggestionPriority.MEDIUM
            else:
                priority = SuggestionPriority.LOW
            suggestions.append(
                Suggestion(
                    step=diagnostic.step,
                    text=diagnostic.suggestion,
                    priority=priority,
                    category=STEP_CATEGORIES.get(diagnostic.step, "general"),
                    automated=diagnostic.fix in SAFE_FIXES,
                    command=diagnostic.fix,
                )
            )

        seen = set()
        unique = []
        for suggestion in suggestions:
            key = (suggestion.step, suggestion.text)
            if key in seen:
                continue
            seen.add(key)
            unique.append(suggestion)
        report.suggestions = sorted(unique, key=lambda s: s.priority.rank)

    # Auto-fix

    async def auto_fix(self, target: ServerTarget) -> Dict[str, Any]:
        """
        Apply the safe local fixes flagged by a fresh run, then re-diagnose.

        Only SSH directory permissions, private key permissions and host key
        acceptance are touched. Firewall and ban state are never modified.

        Returns:
            {applied, failed, before, after}
        """
        before = await self.diagnose(target)
        fixes = []
        for diagnostic in before.diagnostics:
            if diagnostic.fix in SAFE_FIXES and diagnostic.fix not in fixes:
                fixes.append(diagnostic.fix)

        applied: List[str] = []
        failed: List[Dict[str, str]] = []
        for fix in fixes:
            try:
                await self._apply_fix(fix, target)
            except (OSError, PBDeployError, asyncssh.Error) as e:
                failed.append({"fix": fix, "error": str(e)})
                if self.logger:
                    self.logger.warning(f"Fix {fix} failed: {e}")
                continue
            applied.append(fix)
            if self.logger:
                self.logger.success(f"Applied {fix}")

        after = await self.diagnose(target) if applied else before
        return {"applied": applied, "failed": failed, "before": before, "after": after}

    async def _apply_fix(self, fix: str, target: ServerTarget) -> None:
        if fix == "fix_ssh_directory":
            self.ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            self.ssh_dir.chmod(0o700)
        elif fix == "fix_key_permissions":
            Path(target.key_path).expanduser().chmod(0o600)
        elif fix == "accept_host_key":
            await self._accept_host_key(target)

    async def _accept_host_key(self, target: ServerTarget) -> None:
        try:
            key = await asyncio.wait_for(
                self._host_key_fetcher(target.host, target.port),
                timeout=self.settings.dial_timeout,
            )
        except asyncio.TimeoutError:
            raise SSHConnectionError(f"Timed out fetching host key from {target.host}")
        if key is None:
            raise SSHError(f"{target.host} did not present a host key")

        public = key.export_public_key("openssh").decode("utf-8").strip()
        self.ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        with open(self.known_hosts_path, "a", encoding="utf-8") as f:
            f.write(f"{known_hosts_entry(target.host, target.port)} {public}\n")
