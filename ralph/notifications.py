"""Desktop notification helpers for run events."""

import platform
import subprocess

from ralph.models import ExecutionResult


def send_notification(title: str, message: str, sound: bool = True) -> None:
    """Send a macOS notification.

    Uses osascript to display a notification via macOS notification center.
    Silently does nothing on non-macOS platforms.
    """
    if platform.system() != "Darwin":
        return

    message = message.replace('"', "'")
    title = title.replace('"', "'")
    script = f'display notification "{message}" with title "{title}"'
    if sound:
        script += ' sound name "default"'

    subprocess.run(["osascript", "-e", script], check=False)


def notify_run_finished(plan_name: str, result: ExecutionResult) -> None:
    """Notify that a run has ended, summarizing the outcome."""
    if result.status == "cancelled":
        title = f"Ralph: {plan_name} cancelled"
    elif result.success:
        title = f"Ralph: {plan_name} complete"
    else:
        title = f"Ralph: {plan_name} needs attention"
    message = (
        f"{len(result.completed_tasks)} completed, {len(result.failed_tasks)} failed, "
        f"{len(result.blocked_tasks)} blocked"
    )
    send_notification(title, message, sound=not result.success)
