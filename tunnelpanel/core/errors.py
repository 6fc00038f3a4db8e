"""Exception types raised inside the tunnel services."""


class AgentCommandError(RuntimeError):
    """An external command (agent, downloader, systemctl) failed or timed out."""


class PrivilegeError(RuntimeError):
    """An operation needs sudo but no credential is configured."""


class ConfigError(ValueError):
    """Rendered agent configuration did not pass validation."""
