"""system-setup workflow: prepare a fresh Ubuntu server.

Installs system packages, Docker, Node.js, the package manager and the
GitHub CLI, then applies firewall, timezone, swap, backup and SSH settings.
Every idempotency check probes the machine itself, so steps done by hand
(or by an earlier tool) are recorded instead of repeated.

Requires root. Tested on Ubuntu 24.04; other releases need
ALLOW_UNSUPPORTED_OS=true.

Config keys:
    PACKAGE_MANAGER: npm | pnpm | yarn (default npm)
    NODE_MAJOR_VERSION: Node.js major version (default 20)
    FORCE_NODE_REINSTALL: reinstall Node.js when another major is present
    TIMEZONE: IANA timezone (default Asia/Kolkata)
    SWAP_SIZE: swap file size for fallocate (default 2G)
    BACKUP_DIR, BACKUP_USER: backup location and system user
    SSH_PORT, HTTP_PORT, HTTPS_PORT: ports allowed through the firewall
    SSH_SERVICE: systemd unit restarted after hardening (default ssh)

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import os
import platform
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from provision.errors import FatalStepError, PreconditionError
from provision.registry import StepRegistry
from provision.schemas import Step, StepContext, StepKind
from provision_workflows._helpers import file_has_content, package_manager, require_root, write_text

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["/etc/os-release", "/etc/ssh/sshd_config", "/etc/fstab"],
    "writes": ["/etc/apt/**", "/etc/ssh/sshd_config", "/etc/fstab", "/swapfile", "BACKUP_DIR"],
    "external": ["apt-get", "curl", "systemctl", "ufw", "timedatectl", "npm", "useradd"],
}

NAME = "system-setup"
DESCRIPTION = "Install and configure system dependencies on a fresh Ubuntu server"

logger = logging.getLogger(__name__)

SUPPORTED_OS = ("ubuntu", "24.04")

BASE_PACKAGES = [
    "curl", "wget", "git", "build-essential", "software-properties-common",
    "apt-transport-https", "ca-certificates", "gnupg", "lsb-release", "vim",
    "htop", "net-tools", "ufw", "unzip", "tar", "gzip", "jq",
]
DOCKER_PACKAGES = ["docker-ce", "docker-ce-cli", "containerd.io", "docker-buildx-plugin", "docker-compose-plugin"]

KEYRINGS = Path("/etc/apt/keyrings")
DOCKER_KEY = KEYRINGS / "docker.asc"
DOCKER_SOURCES = Path("/etc/apt/sources.list.d/docker.list")
GH_KEY = Path("/usr/share/keyrings/githubcli-archive-keyring.gpg")
GH_SOURCES = Path("/etc/apt/sources.list.d/github-cli.list")
SSHD_CONFIG = Path("/etc/ssh/sshd_config")
AUTO_UPGRADES = Path("/etc/apt/apt.conf.d/20auto-upgrades")
FSTAB = Path("/etc/fstab")
SWAPFILE = "/swapfile"

AUTO_UPGRADES_CONTENT = (
    'APT::Periodic::Update-Package-Lists "1";\n'
    'APT::Periodic::Unattended-Upgrade "1";\n'
    'APT::Periodic::AutocleanInterval "7";\n'
)

SSHD_SETTINGS = {
    "PermitRootLogin": "no",
    "PasswordAuthentication": "no",
    "PubkeyAuthentication": "yes",
}

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
# apt-get exits 100 on lock contention and mirror hiccups
APT_TRANSIENT = (100,)
# curl: resolve, connect, timeout, TLS, receive errors
CURL_TRANSIENT = (6, 7, 28, 35, 56)


# =============================================================================
# Preconditions and probes
# =============================================================================


def os_release() -> Dict[str, str]:
    try:
        return platform.freedesktop_os_release()
    except OSError:
        return {}


def check_host(ctx: StepContext) -> None:
    """Precondition shared by every step: root on a supported Ubuntu."""
    require_root(ctx)
    info = os_release()
    os_id, version = info.get("ID", ""), info.get("VERSION_ID", "")
    if not os_id:
        raise PreconditionError("cannot detect OS version (/etc/os-release missing)")
    if os_id != SUPPORTED_OS[0]:
        raise PreconditionError(f"designed for Ubuntu only, detected: {os_id}")
    if version != SUPPORTED_OS[1] and not ctx.flag("ALLOW_UNSUPPORTED_OS"):
        raise PreconditionError(
            f"tested on Ubuntu {SUPPORTED_OS[1]}, detected {version}; "
            f"set ALLOW_UNSUPPORTED_OS=true to continue"
        )


def packages_installed(ctx: StepContext, packages: List[str]) -> bool:
    out = ctx.runner.output(["dpkg-query", "-W", "-f=${Package} ${Status}\n", *packages])
    if out is None:
        return False
    installed = {
        line.split()[0]
        for line in out.splitlines()
        if line.endswith("install ok installed")
    }
    return all(p in installed for p in packages)


def node_major(ctx: StepContext) -> Optional[int]:
    out = ctx.runner.output(["node", "--version"])
    match = re.match(r"v(\d+)\.", out or "")
    return int(match.group(1)) if match else None


def _node_version(ctx: StepContext) -> int:
    return int(ctx.get("NODE_MAJOR_VERSION", 20))


def _ports(ctx: StepContext) -> List[str]:
    return [str(ctx.get(k, d)) for k, d in (("SSH_PORT", 22), ("HTTP_PORT", 80), ("HTTPS_PORT", 443))]


def _apt_install(ctx: StepContext, packages: List[str]) -> None:
    ctx.run(["apt-get", "install", "-y", "-qq", *packages], env=APT_ENV, transient_exit_codes=APT_TRANSIENT)


def _download(ctx: StepContext, url: str, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    ctx.run(["curl", "-fsSL", url, "-o", str(dest)], transient_exit_codes=CURL_TRANSIENT)


def _arch(ctx: StepContext) -> str:
    arch = ctx.runner.output(["dpkg", "--print-architecture"])
    if not arch:
        raise FatalStepError("cannot determine architecture (dpkg --print-architecture failed)")
    return arch


# =============================================================================
# Actions
# =============================================================================


def update_system(ctx: StepContext) -> None:
    ctx.run(["apt-get", "update", "-qq"], env=APT_ENV, transient_exit_codes=APT_TRANSIENT)
    ctx.run(["apt-get", "upgrade", "-y", "-qq"], env=APT_ENV, transient_exit_codes=APT_TRANSIENT)


def install_base_packages(ctx: StepContext) -> None:
    _apt_install(ctx, BASE_PACKAGES)


def install_docker(ctx: StepContext) -> None:
    KEYRINGS.mkdir(mode=0o755, parents=True, exist_ok=True)
    _download(ctx, "https://download.docker.com/linux/ubuntu/gpg", DOCKER_KEY)
    DOCKER_KEY.chmod(0o644)
    codename = os_release().get("VERSION_CODENAME", "noble")
    write_text(
        DOCKER_SOURCES,
        f"deb [arch={_arch(ctx)} signed-by={DOCKER_KEY}] "
        f"https://download.docker.com/linux/ubuntu {codename} stable\n",
    )
    ctx.run(["apt-get", "update", "-qq"], env=APT_ENV, transient_exit_codes=APT_TRANSIENT)
    _apt_install(ctx, DOCKER_PACKAGES)
    ctx.run(["systemctl", "enable", "--now", "docker"])

    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        ctx.run(["usermod", "-aG", "docker", sudo_user])
        logger.info(f"Added {sudo_user} to docker group (logout/login required)")


def _nodejs_applied(ctx: StepContext) -> bool:
    major = node_major(ctx)
    if major is None:
        return False
    if major == _node_version(ctx):
        return True
    if ctx.flag("FORCE_NODE_REINSTALL"):
        return False
    logger.warning(
        f"Node.js v{major} installed, expected v{_node_version(ctx)}; "
        f"set FORCE_NODE_REINSTALL=true to replace it"
    )
    return True


def install_nodejs(ctx: StepContext) -> None:
    with tempfile.TemporaryDirectory() as tmp:
        setup = Path(tmp) / "nodesource_setup.sh"
        _download(ctx, f"https://deb.nodesource.com/setup_{_node_version(ctx)}.x", setup)
        ctx.run(["bash", str(setup)], env=APT_ENV)
    _apt_install(ctx, ["nodejs"])


def _pnpm_applied(ctx: StepContext) -> bool:
    if package_manager(ctx) != "pnpm":
        return True
    return ctx.runner.which("pnpm") is not None


def install_pnpm(ctx: StepContext) -> None:
    ctx.run(["npm", "install", "-g", "pnpm"])


def install_github_cli(ctx: StepContext) -> None:
    _download(ctx, "https://cli.github.com/packages/githubcli-archive-keyring.gpg", GH_KEY)
    GH_KEY.chmod(0o644)
    write_text(
        GH_SOURCES,
        f"deb [arch={_arch(ctx)} signed-by={GH_KEY}] https://cli.github.com/packages stable main\n",
    )
    ctx.run(["apt-get", "update", "-qq"], env=APT_ENV, transient_exit_codes=APT_TRANSIENT)
    _apt_install(ctx, ["gh"])


def _firewall_applied(ctx: StepContext) -> bool:
    out = ctx.runner.output(["ufw", "status"])
    if not out or "Status: active" not in out:
        return False
    return all(re.search(rf"^{port}/tcp\s+ALLOW", out, re.MULTILINE) for port in _ports(ctx))


def configure_firewall(ctx: StepContext) -> None:
    ssh, http, https = _ports(ctx)
    ctx.run(["ufw", "--force", "reset"])
    ctx.run(["ufw", "default", "deny", "incoming"])
    ctx.run(["ufw", "default", "allow", "outgoing"])
    # SSH first, so enabling never locks out the current session
    ctx.run(["ufw", "allow", f"{ssh}/tcp", "comment", "SSH"])
    ctx.run(["ufw", "allow", f"{http}/tcp", "comment", "HTTP"])
    ctx.run(["ufw", "allow", f"{https}/tcp", "comment", "HTTPS"])
    ctx.run(["ufw", "--force", "enable"])


def _timezone(ctx: StepContext) -> str:
    return ctx.get("TIMEZONE", "Asia/Kolkata")


def _timezone_applied(ctx: StepContext) -> bool:
    return ctx.runner.output(["timedatectl", "show", "-p", "Timezone", "--value"]) == _timezone(ctx)


def configure_timezone(ctx: StepContext) -> None:
    ctx.run(["timedatectl", "set-timezone", _timezone(ctx)])


def _swap_applied(ctx: StepContext) -> bool:
    out = ctx.runner.output(["swapon", "--show", "--noheadings"])
    return bool(out) and SWAPFILE in out


def create_swap(ctx: StepContext) -> None:
    if not Path(SWAPFILE).exists():
        ctx.run(["fallocate", "-l", str(ctx.get("SWAP_SIZE", "2G")), SWAPFILE])
        os.chmod(SWAPFILE, 0o600)
        ctx.run(["mkswap", SWAPFILE])
    ctx.run(["swapon", SWAPFILE])

    fstab = FSTAB.read_text() if FSTAB.exists() else ""
    if SWAPFILE not in fstab:
        if fstab and not fstab.endswith("\n"):
            fstab += "\n"
        FSTAB.write_text(fstab + f"{SWAPFILE} none swap sw 0 0\n")


def _backup_dir(ctx: StepContext) -> Path:
    return Path(ctx.get("BACKUP_DIR", "/var/backups/farscape"))


def _backup_user(ctx: StepContext) -> str:
    return ctx.get("BACKUP_USER", "farscape-backup")


BACKUP_SUBDIRS = ["database", "minio", "app", "scripts"]


def _backup_dirs_applied(ctx: StepContext) -> bool:
    if not ctx.runner.probe(["id", _backup_user(ctx)]):
        return False
    return all((_backup_dir(ctx) / sub).is_dir() for sub in BACKUP_SUBDIRS)


def setup_backup_dirs(ctx: StepContext) -> None:
    backup_dir, user = _backup_dir(ctx), _backup_user(ctx)
    if not ctx.runner.probe(["id", user]):
        ctx.run(["useradd", "-r", "-s", "/bin/false", "-d", str(backup_dir), user])
    for sub in BACKUP_SUBDIRS:
        (backup_dir / sub).mkdir(parents=True, exist_ok=True)
    ctx.run(["chown", "-R", f"root:{user}", str(backup_dir)])
    ctx.run(["chmod", "-R", "750", str(backup_dir)])


def harden_sshd_config(text: str) -> str:
    """
    Apply SSHD_SETTINGS to sshd_config text.

    Replaces the first (possibly commented-out) occurrence of each setting
    and appends settings that do not appear at all.
    """
    lines = text.splitlines()
    done = set()
    for i, line in enumerate(lines):
        match = re.match(r"^\s*#?\s*(\w+)\b", line)
        if not match:
            continue
        key = match.group(1)
        if key in SSHD_SETTINGS and key not in done:
            lines[i] = f"{key} {SSHD_SETTINGS[key]}"
            done.add(key)
    for key, value in SSHD_SETTINGS.items():
        if key not in done:
            lines.append(f"{key} {value}")
    return "\n".join(lines) + "\n"


def _ssh_hardened(ctx: StepContext) -> bool:
    try:
        text = SSHD_CONFIG.read_text()
    except OSError:
        return False
    return harden_sshd_config(text) == text


def harden_ssh(ctx: StepContext) -> None:
    if not SSHD_CONFIG.exists():
        raise FatalStepError(f"{SSHD_CONFIG} not found; is openssh-server installed?")
    write_text(SSHD_CONFIG, harden_sshd_config(SSHD_CONFIG.read_text()))
    # Never restart into a broken config; rollback restores the old file
    ctx.run(["sshd", "-t"])
    ctx.run(["systemctl", "restart", ctx.get("SSH_SERVICE", "ssh")])


def _auto_updates_applied(ctx: StepContext) -> bool:
    return file_has_content(AUTO_UPGRADES, AUTO_UPGRADES_CONTENT) and packages_installed(
        ctx, ["unattended-upgrades"]
    )


def setup_auto_updates(ctx: StepContext) -> None:
    _apt_install(ctx, ["unattended-upgrades"])
    write_text(AUTO_UPGRADES, AUTO_UPGRADES_CONTENT)


def build_registry() -> StepRegistry:
    """Steps of the system-setup workflow."""
    common = {"precondition": check_host, "inputs": ("ALLOW_UNSUPPORTED_OS",)}
    registry = StepRegistry(NAME)
    registry.register_all([
        Step(
            step_id="update-system",
            description="Update package lists and upgrade installed packages",
            action=update_system,
            kind=StepKind.PACKAGE,
            requires_tools=("apt-get",),
            **common,
        ),
        Step(
            step_id="install-base-packages",
            description="Install essential build and admin tools",
            action=install_base_packages,
            is_applied=lambda ctx: packages_installed(ctx, BASE_PACKAGES),
            validate=lambda ctx: packages_installed(ctx, BASE_PACKAGES),
            requires=("update-system",),
            params={"packages": BASE_PACKAGES},
            kind=StepKind.PACKAGE,
            **common,
        ),
        Step(
            step_id="install-docker",
            description="Install Docker Engine and the compose plugin",
            action=install_docker,
            is_applied=lambda ctx: ctx.runner.which("docker") is not None,
            validate=lambda ctx: ctx.runner.probe(["docker", "--version"]),
            requires=("install-base-packages",),
            params={"packages": DOCKER_PACKAGES},
            backup_paths=(str(DOCKER_SOURCES),),
            kind=StepKind.PACKAGE,
            requires_tools=("systemctl",),
            **common,
        ),
        Step(
            step_id="install-nodejs",
            description="Install Node.js LTS from NodeSource",
            action=install_nodejs,
            is_applied=_nodejs_applied,
            validate=lambda ctx: node_major(ctx) == _node_version(ctx),
            requires=("install-base-packages",),
            precondition=check_host,
            inputs=("ALLOW_UNSUPPORTED_OS", "NODE_MAJOR_VERSION", "FORCE_NODE_REINSTALL"),
            kind=StepKind.PACKAGE,
        ),
        Step(
            step_id="install-pnpm",
            description="Install pnpm globally (only when PACKAGE_MANAGER=pnpm)",
            action=install_pnpm,
            is_applied=_pnpm_applied,
            validate=lambda ctx: ctx.runner.probe(["pnpm", "--version"]),
            requires=("install-nodejs",),
            precondition=check_host,
            inputs=("ALLOW_UNSUPPORTED_OS", "PACKAGE_MANAGER"),
            kind=StepKind.PACKAGE,
        ),
        Step(
            step_id="install-github-cli",
            description="Install the GitHub CLI (gh)",
            action=install_github_cli,
            is_applied=lambda ctx: ctx.runner.which("gh") is not None,
            validate=lambda ctx: ctx.runner.probe(["gh", "--version"]),
            requires=("install-base-packages",),
            backup_paths=(str(GH_SOURCES),),
            kind=StepKind.PACKAGE,
            **common,
        ),
        Step(
            step_id="configure-firewall",
            description="Allow SSH, HTTP and HTTPS through UFW and enable it",
            action=configure_firewall,
            is_applied=_firewall_applied,
            validate=_firewall_applied,
            requires=("install-base-packages",),
            precondition=check_host,
            inputs=("ALLOW_UNSUPPORTED_OS", "SSH_PORT", "HTTP_PORT", "HTTPS_PORT"),
            kind=StepKind.COMMAND,
        ),
        Step(
            step_id="configure-timezone",
            description="Set the system timezone",
            action=configure_timezone,
            is_applied=_timezone_applied,
            validate=_timezone_applied,
            requires=("update-system",),
            precondition=check_host,
            inputs=("ALLOW_UNSUPPORTED_OS", "TIMEZONE"),
            kind=StepKind.COMMAND,
            requires_tools=("timedatectl",),
        ),
        Step(
            step_id="create-swap",
            description="Create and enable a swap file",
            action=create_swap,
            is_applied=_swap_applied,
            validate=_swap_applied,
            requires=("update-system",),
            precondition=check_host,
            inputs=("ALLOW_UNSUPPORTED_OS", "SWAP_SIZE"),
            backup_paths=(str(FSTAB),),
            kind=StepKind.COMMAND,
        ),
        Step(
            step_id="setup-backup-dirs",
            description="Create the backup user and backup directories",
            action=setup_backup_dirs,
            is_applied=_backup_dirs_applied,
            validate=_backup_dirs_applied,
            requires=("update-system",),
            precondition=check_host,
            inputs=("ALLOW_UNSUPPORTED_OS", "BACKUP_DIR", "BACKUP_USER"),
            kind=StepKind.COMMAND,
        ),
        Step(
            step_id="harden-ssh",
            description="Disable root login and password authentication for SSH",
            action=harden_ssh,
            is_applied=_ssh_hardened,
            validate=_ssh_hardened,
            requires=("configure-firewall",),
            precondition=check_host,
            inputs=("ALLOW_UNSUPPORTED_OS", "SSH_SERVICE"),
            params={"settings": SSHD_SETTINGS},
            backup_paths=(str(SSHD_CONFIG),),
            kind=StepKind.COMMAND,
        ),
        Step(
            step_id="setup-auto-updates",
            description="Enable unattended security upgrades",
            action=setup_auto_updates,
            is_applied=_auto_updates_applied,
            validate=_auto_updates_applied,
            requires=("update-system",),
            params={"content": AUTO_UPGRADES_CONTENT},
            backup_paths=(str(AUTO_UPGRADES),),
            kind=StepKind.PACKAGE,
            **common,
        ),
    ])
    return registry
