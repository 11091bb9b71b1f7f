"""Status styling for the terminal UI."""

from rich.text import Text

from kubeforward.models.enums import TunnelStatus

STATUS_STYLES = {
    TunnelStatus.IDLE: "dim",
    TunnelStatus.CONNECTING: "yellow",
    TunnelStatus.ACTIVE: "bold green",
    TunnelStatus.STOPPED: "cyan",
    TunnelStatus.FAILED: "bold red",
}

STATUS_ICONS = {
    TunnelStatus.IDLE: "○",
    TunnelStatus.CONNECTING: "◌",
    TunnelStatus.ACTIVE: "●",
    TunnelStatus.STOPPED: "■",
    TunnelStatus.FAILED: "✗",
}


def get_status_style(status: TunnelStatus) -> str:
    return STATUS_STYLES.get(status, "")


def create_status_text(status: TunnelStatus) -> Text:
    """Icon and status name, colored by status."""
    icon = STATUS_ICONS.get(status, "?")
    return Text(f"{icon} {status.value}", style=get_status_style(status))


def truncate(text: str | None, length: int) -> str:
    if not text:
        return ""
    return text if len(text) <= length else text[: length - 1] + "…"
