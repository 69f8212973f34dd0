"""
Terminal UI for neodeck.
"""


def run_textual_tui(*args, **kwargs):
    """
    Lazily import and launch the Textual TUI.

    Keeps the headless subcommands and tests importable when ``textual``
    is not installed.
    """
    from .tui_app import run_textual_tui as _run_textual_tui

    return _run_textual_tui(*args, **kwargs)


__all__ = ["run_textual_tui"]
