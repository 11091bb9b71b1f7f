"""
Textual terminal UI.
"""

from kubeforward.cli.tui.app import ForwardApp, run_tui

__all__ = ["ForwardApp", "run_tui"]
