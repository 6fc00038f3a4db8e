"""Locate or install the playit.gg agent executable."""

from dataclasses import dataclass
import os
from pathlib import Path
import platform
import shutil
import stat
import tempfile
import time

import requests

from tunnelpanel.core.errors import AgentCommandError
from tunnelpanel.services.process_driver import run_command

RELEASE_API_URL = "https://api.github.com/repos/playit-cloud/playit-agent/releases/latest"
SANDBOX_DOWNLOAD_URLS = {
    "arm64": "https://github.com/playit-cloud/playit-agent/releases/latest/download/playit-linux-arm64",
    "arm": "https://github.com/playit-cloud/playit-agent/releases/latest/download/playit-linux-arm",
}
SANDBOX_ROOT = "/data/data/com.termux"
SANDBOX_BIN_DIR = f"{SANDBOX_ROOT}/files/usr/bin"
SANDBOX_HOME_DIR = f"{SANDBOX_ROOT}/files/home"
SANDBOX_DEPENDENCIES = ("which", "curl", "wget", "tur-repo")
COMMON_BIN_DIRS = ("/bin", "/usr/bin", "/usr/local/bin", SANDBOX_BIN_DIR)

RELEASE_FETCH_ATTEMPTS = 3
RELEASE_BACKOFF_BASE_SECONDS = 1.0
RELEASE_BACKOFF_CAP_SECONDS = 30.0
HTTP_TIMEOUT_SECONDS = 10
DOWNLOAD_TIMEOUT_SECONDS = 300
PACKAGE_TIMEOUT_SECONDS = 300

ASSET_PATTERNS = {
    "windows": {"x64": "windows-amd64", "ia32": "windows-386", "arm64": "windows-arm64"},
    "linux": {"x64": "linux-amd64", "ia32": "linux-386", "arm": "linux-arm", "arm64": "linux-arm64"},
    "darwin": {"x64": "darwin-amd64", "arm64": "darwin-arm64"},
}

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv8l": "arm64",
}


@dataclass(frozen=True)
class PlatformInfo:
    system: str
    arch: str
    is_sandbox: bool

    @property
    def binary_name(self):
        return "playit.exe" if self.system == "windows" else "playit"


def _noop_log(message, error=False):
    return None


def normalize_arch(machine):
    machine = (machine or "").strip().lower()
    if machine in _ARCH_ALIASES:
        return _ARCH_ALIASES[machine]
    if machine.startswith("arm"):
        return "arm"
    return machine


def _is_sandbox(environ):
    if "com.termux" in (environ.get("PREFIX") or ""):
        return True
    if os.path.exists(SANDBOX_ROOT):
        return True
    uname = find_command("uname")
    if not uname:
        return False
    try:
        result = run_command([uname, "-a"], timeout=5)
    except AgentCommandError:
        return False
    return "android" in (result.stdout or "").lower()


def detect_platform(environ=None):
    """Return the running system, normalized arch and Android sandbox flag."""
    environ = os.environ if environ is None else environ
    system = platform.system().lower()
    if system.startswith(("cygwin", "msys")):
        system = "windows"
    return PlatformInfo(
        system=system,
        arch=normalize_arch(platform.machine()),
        is_sandbox=system == "linux" and _is_sandbox(environ),
    )


def _is_executable(path):
    path = Path(path)
    return path.is_file() and os.access(path, os.X_OK)


def find_command(name, extra_dirs=COMMON_BIN_DIRS):
    """PATH lookup first, then the usual bin directories."""
    found = shutil.which(name)
    if found:
        return found
    for base in extra_dirs:
        candidate = Path(base) / name
        if _is_executable(candidate):
            return str(candidate)
    return None


def ensure_sandbox_dependencies(log=_noop_log):
    """Install the download helpers the sandbox install path needs.

    Best effort only: every failure is logged and the caller carries on.
    """
    try:
        run_command(["pkg", "--help"], timeout=30)
    except AgentCommandError:
        log("pkg command not available, trying apt...", error=True)
        try:
            run_command(["apt", "update"], timeout=PACKAGE_TIMEOUT_SECONDS)
        except AgentCommandError as exc:
            log(f"Neither pkg nor apt is usable: {exc}", error=True)
            return

    for dependency in SANDBOX_DEPENDENCIES:
        if find_command(dependency):
            continue
        log(f"Installing {dependency}...")
        installed = False
        for manager in ("pkg", "apt"):
            try:
                result = run_command([manager, "install", "-y", dependency], timeout=PACKAGE_TIMEOUT_SECONDS)
            except AgentCommandError:
                continue
            if result.returncode == 0:
                installed = True
                break
        if not installed:
            log(f"Failed to install {dependency}", error=True)


def candidate_paths(platform_info, cwd=None, home=None, environ=None):
    """Ordered filesystem locations checked for an existing agent."""
    cwd = Path(cwd or os.getcwd())
    home = Path(home or Path.home())
    environ = os.environ if environ is None else environ
    name = platform_info.binary_name
    paths = [
        cwd / name,
        cwd / "bin" / name,
        home / ".local" / "bin" / name,
        Path("/usr/local/bin") / name,
        Path("/usr/bin") / name,
    ]
    if platform_info.system == "windows":
        for var in ("APPDATA", "PROGRAMFILES", "LOCALAPPDATA"):
            paths.append(Path(environ.get(var, "")) / "playit" / name)
    if platform_info.is_sandbox:
        paths.append(Path(SANDBOX_BIN_DIR) / "playit-cli")
        paths.append(Path(SANDBOX_HOME_DIR) / "playit-cli")
    return paths


def find_agent_binary(platform_info, cwd=None, home=None, environ=None):
    """Return the first existing executable agent path, or None."""
    if platform_info.is_sandbox:
        found = find_command("playit-cli")
        if found:
            return found
    for candidate in candidate_paths(platform_info, cwd=cwd, home=home, environ=environ):
        if _is_executable(candidate):
            return str(candidate)
    return find_command(platform_info.binary_name)


def fetch_latest_release(attempts=RELEASE_FETCH_ATTEMPTS, sleep=time.sleep, log=_noop_log):
    """Return the latest release metadata dict, or None after all attempts fail."""
    headers = {
        "User-Agent": "tunnelpanel-agent-installer",
        "Accept": "application/vnd.github.v3+json",
    }
    for attempt in range(attempts):
        try:
            response = requests.get(RELEASE_API_URL, headers=headers, timeout=HTTP_TIMEOUT_SECONDS)
            if response.status_code == 200:
                return response.json()
            log(f"GitHub API returned status code {response.status_code}", error=True)
        except (requests.RequestException, ValueError) as exc:
            log(f"Error accessing GitHub API: {exc}", error=True)
        if attempt + 1 < attempts:
            sleep(min(RELEASE_BACKOFF_BASE_SECONDS * (2 ** attempt), RELEASE_BACKOFF_CAP_SECONDS))
    return None


def asset_pattern(system, arch):
    return ASSET_PATTERNS.get(system, {}).get(arch)


def select_release_asset(release, system, arch):
    """Return the release asset matching this platform, or None."""
    pattern = asset_pattern(system, arch)
    if not pattern:
        return None
    for asset in release.get("assets") or []:
        if pattern.lower() in str(asset.get("name", "")).lower():
            return asset
    return None


def _download_with_requests(url, dest):
    dest = Path(dest)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{dest.name}.", dir=str(dest.parent))
    try:
        with requests.get(url, stream=True, timeout=(HTTP_TIMEOUT_SECONDS, DOWNLOAD_TIMEOUT_SECONDS)) as response:
            response.raise_for_status()
            with os.fdopen(fd, "wb") as fh:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        fh.write(chunk)
        os.replace(tmp_path, dest)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


def download_file(url, dest, log=_noop_log):
    """Download ``url`` to ``dest`` via requests, then curl, then wget."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        _download_with_requests(url, dest)
        return
    except (requests.RequestException, OSError) as exc:
        log(f"Native download failed ({exc}), trying alternatives...", error=True)

    fallbacks = []
    curl = find_command("curl")
    if curl:
        fallbacks.append([curl, "-fsSL", "--max-time", str(DOWNLOAD_TIMEOUT_SECONDS), "-o", str(dest), url])
    wget = find_command("wget")
    if wget:
        fallbacks.append([wget, "-q", f"--timeout={HTTP_TIMEOUT_SECONDS}", "-O", str(dest), url])
    if not fallbacks:
        raise AgentCommandError("No download method available")

    for cmd in fallbacks:
        try:
            result = run_command(cmd, timeout=DOWNLOAD_TIMEOUT_SECONDS + 30)
        except AgentCommandError as exc:
            log(str(exc), error=True)
            continue
        if result.returncode == 0 and dest.exists():
            return
        log(f"{Path(cmd[0]).name} download failed with exit code {result.returncode}", error=True)
    raise AgentCommandError("All download methods failed")


def _make_executable(path):
    mode = os.stat(path).st_mode
    os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH | stat.S_IRUSR | stat.S_IWUSR)


def install_on_sandbox(platform_info, home=None, log=_noop_log):
    """Install on the Android sandbox: package manager first, then direct download."""
    try:
        result = run_command(["pkg", "install", "-y", "playit"], timeout=PACKAGE_TIMEOUT_SECONDS)
        if result.returncode == 0:
            found = find_command("playit-cli")
            if found:
                return {"path": found, "installed": True, "error": None, "version": None}
    except AgentCommandError:
        pass
    log("pkg installation failed, trying direct download...")

    url = SANDBOX_DOWNLOAD_URLS.get(platform_info.arch)
    if not url:
        return {
            "path": None,
            "installed": False,
            "error": f"Unsupported sandbox architecture: {platform_info.arch}",
            "version": None,
        }
    bin_path = Path(home or Path.home()) / "bin" / "playit-cli"
    download_file(url, bin_path, log=log)
    _make_executable(bin_path)
    try:
        os.symlink(bin_path, Path(SANDBOX_BIN_DIR) / "playit-cli")
    except OSError:
        log("Could not create symlink, using direct path instead")
    return {"path": str(bin_path), "installed": True, "error": None, "version": None}


def default_install_dir(platform_info, home=None):
    home = Path(home or Path.home())
    if platform_info.system == "windows":
        return home / "AppData" / "Local" / "playit"
    return home / ".local" / "bin"


def install_agent_binary(platform_info, install_dir=None, log=_noop_log, sleep=time.sleep):
    """Download the latest release asset for this platform."""
    if platform_info.is_sandbox:
        return install_on_sandbox(platform_info, log=log)

    release = fetch_latest_release(sleep=sleep, log=log)
    if not release:
        return {
            "path": None,
            "installed": False,
            "error": "Failed to fetch release information from GitHub API",
            "version": None,
        }
    if not asset_pattern(platform_info.system, platform_info.arch):
        return {
            "path": None,
            "installed": False,
            "error": f"Unsupported platform/architecture: {platform_info.system}/{platform_info.arch}",
            "version": None,
        }
    tag = release.get("tag_name")
    asset = select_release_asset(release, platform_info.system, platform_info.arch)
    if not asset:
        return {
            "path": None,
            "installed": False,
            "error": f"No matching binary found for {platform_info.system}/{platform_info.arch} in release {tag}",
            "version": tag,
        }

    target_dir = Path(install_dir) if install_dir else default_install_dir(platform_info)
    target_dir.mkdir(parents=True, exist_ok=True)
    binary_path = target_dir / platform_info.binary_name
    log(f"Downloading PlayIt from {asset.get('browser_download_url')}...")
    download_file(asset["browser_download_url"], binary_path, log=log)
    if platform_info.system != "windows":
        _make_executable(binary_path)
    log(f"PlayIt binary installed to: {binary_path}")
    return {"path": str(binary_path), "installed": True, "error": None, "version": tag}


def resolve_agent_binary(auto_install=False, install_dir=None, force_update=False, log=None, platform_info=None):
    """Find, or when allowed install, the agent executable.

    Always returns ``{"path", "installed", "error", "version"}``; failures
    are reported in ``error`` and never raised.
    """
    log = log or _noop_log
    try:
        info = platform_info or detect_platform()
        if info.is_sandbox and auto_install:
            ensure_sandbox_dependencies(log=log)

        if not force_update:
            found = find_agent_binary(info)
            if found:
                return {"path": found, "installed": True, "error": None, "version": None}

        if auto_install or force_update:
            return install_agent_binary(info, install_dir=install_dir, log=log)

        return {
            "path": None,
            "installed": False,
            "error": "Playit binary not found. Set PLAYIT_AUTO_INSTALL to true to attempt installation.",
            "version": None,
        }
    except (AgentCommandError, OSError, requests.RequestException, KeyError) as exc:
        return {"path": None, "installed": False, "error": f"Installation failed: {exc}", "version": None}
