"""
Rich logging helpers for the ABC optimizer.

Console output follows the same layout everywhere: a timestamp, an optional
emoji, the message, and optional panels for iteration summaries. Output can be
redirected to a watch file that is tailed while the optimizer runs.
"""

import os
import datetime
import contextlib

from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.progress import (
    Progress,
    SpinnerColumn,
    BarColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
    TaskProgressColumn,
)


DEFAULT_WATCH_PATH = "logs/abc_evaluation.log"


def create_console():
    """Create a Rich console with the optimizer's standard configuration."""
    return Console(
        force_terminal=True,
        no_color=False,
        log_path=False,
        width=191,
        color_system="truecolor",
        legacy_windows=False,
    )


@contextlib.contextmanager
def redirect_to_watch_path(watch_path):
    """Redirect stdout/stderr into ``watch_path`` (no-op when it is None)."""
    if not watch_path:
        yield
        return

    watch_dir = os.path.dirname(watch_path)
    if watch_dir:
        os.makedirs(watch_dir, exist_ok=True)
    with open(watch_path, "a") as f, \
         contextlib.redirect_stdout(f), \
         contextlib.redirect_stderr(f):
        yield


def console_wrapper(console, msg, watch_path=None):
    """Print a message or Rich renderable, optionally into the watch file."""
    if console is None:
        return
    with redirect_to_watch_path(watch_path):
        console.print(msg)


def log_message(console, message, emoji=None, panel=False, timestamp=True,
                watch_path=None, title="ABC Stats", border_style="cyan"):
    """
    Log a message with Rich formatting.

    Parameters
    ----------
    console : Console or None
        Rich console; nothing is printed when None
    message : str
        Message to log
    emoji : str, optional
        Emoji placed between timestamp and message
    panel : bool
        Wrap the message in a panel
    timestamp : bool
        Prefix the current time
    watch_path : str, optional
        File receiving the output instead of the terminal
    """
    if console is None:
        return

    timestamp_str = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S') if timestamp else ""
    emoji_str = f" {emoji}" if emoji else ""
    log_text = f"{timestamp_str}{emoji_str} {message}"

    if panel:
        output = Panel(log_text, title=title, border_style=border_style)
    else:
        output = log_text
    console_wrapper(console, output, watch_path)


def log_error(console, error_message, exception=None, watch_path=None):
    """Log an error panel, including exception details when given."""
    if console is None:
        return

    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    error_text = Text()
    error_text.append(f"[{timestamp}] ", style="dim")
    error_text.append("❌ ERROR: ", style="bold red")
    error_text.append(error_message, style="red")

    if exception:
        error_text.append("\n  Exception: ", style="dim")
        error_text.append(f"{type(exception).__name__}: {str(exception)}", style="yellow")

    console_wrapper(
        console,
        Panel(error_text, title="Error", border_style="red", expand=False),
        watch_path,
    )


def create_progress_bar(console=None, transient=True):
    """Create a Rich progress bar in the optimizer's style."""
    return Progress(
        SpinnerColumn(spinner_name="dots12"),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(bar_width=None),
        "•",
        TaskProgressColumn(
            text_format="[progress.percentage]{task.percentage:>5.1f}%",
            show_speed=True,
        ),
        "•",
        TimeElapsedColumn(),
        "•",
        TimeRemainingColumn(),
        console=console,
        transient=transient,
    )


def format_eta(elapsed, completed, total):
    """Estimate the remaining seconds from elapsed time and progress."""
    if completed <= 0 or total <= 0:
        return float("nan")
    progress = completed / total
    return elapsed / progress * (1.0 - progress)
