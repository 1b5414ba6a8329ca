"""
Terminal dashboard for plan execution.

Renders a WorkflowStatus with:
- Plan header (status, revision, progress)
- Step table with per-step status, agent and error
- Final output panel
- Engine statistics (credit, upstream circuit, per-agent success)

Uses Rich library for terminal UI with live updates.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .plan import PlanStatus, StepStatus, WorkflowStatus

STEP_STYLES = {
    StepStatus.PENDING: "dim",
    StepStatus.RUNNING: "bold yellow",
    StepStatus.SUCCEEDED: "green",
    StepStatus.FAILED: "bold red",
    StepStatus.SKIPPED: "cyan",
}

STEP_ICONS = {
    StepStatus.PENDING: "·",
    StepStatus.RUNNING: "●",
    StepStatus.SUCCEEDED: "✓",
    StepStatus.FAILED: "✗",
    StepStatus.SKIPPED: "↷",
}

PLAN_STYLES = {
    PlanStatus.DRAFT: "white",
    PlanStatus.ACTIVE: "bold yellow",
    PlanStatus.PAUSED: "yellow",
    PlanStatus.COMPLETED: "bold green",
    PlanStatus.FAILED: "bold red",
}


def render_header(status: WorkflowStatus) -> Text:
    """Plan id, status and progress on one line."""
    settled = sum(1 for s in status.steps if s.status in (StepStatus.SUCCEEDED, StepStatus.SKIPPED))
    text = Text()
    text.append("Plan: ", style="bold")
    text.append(status.plan_id[:12])
    text.append("  |  Status: ", style="bold")
    text.append(status.status.value.upper(), style=PLAN_STYLES[status.status])
    text.append(f"  |  Revision {status.revision}", style="dim")
    text.append(f"  |  {settled}/{len(status.steps)} steps done", style="dim")
    return text


def render_steps(status: WorkflowStatus) -> Table:
    """Render step table."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Agent", style="cyan")
    table.add_column("After", justify="center")
    table.add_column("Status", justify="center")
    table.add_column("Error", style="red")

    for step in status.steps:
        style = STEP_STYLES[step.status]
        agent = step.assigned_agent
        if step.collaborator:
            agent += f" + {step.collaborator}"
        table.add_row(
            str(step.index),
            step.description,
            agent,
            ", ".join(str(d) for d in step.depends_on) or "-",
            Text(f"{STEP_ICONS[step.status]} {step.status.value}", style=style),
            step.error or "",
        )

    return table


def render_statistics(statistics: Dict[str, Any], balance: Optional[int] = None) -> Table:
    """Render credit balance, upstream circuit and per-agent success rates."""
    table = Table(show_header=False, box=None, padding=(0, 1))

    if balance is not None:
        table.add_row("Credit:", Text(str(balance), style="green" if balance > 0 else "bold red"))

    gateway = statistics.get("gateway", {})
    state = gateway.get("state", "unknown")
    table.add_row("Upstream:", Text(state.upper(), style="green" if state == "closed" else "bold red"))

    executor = statistics.get("executor", {})
    table.add_row("Drivers:", f"{executor.get('active_drivers', 0)} active / {executor.get('open_plans', 0)} open")

    agents = statistics.get("metrics", {}).get("agents", {})
    if agents:
        table.add_row()
        for agent_id, data in agents.items():
            table.add_row(
                f"{agent_id}:",
                f"{data.get('successful_steps', 0)}/{data.get('total_steps', 0)} ok "
                f"({data.get('success_rate', 0.0):.0f}%)",
            )

    return table


def render_status(status: WorkflowStatus) -> Group:
    """Header, step table and (when present) the final output."""
    parts = [
        Panel(render_header(status), border_style=PLAN_STYLES[status.status]),
        render_steps(status),
    ]
    if status.final_output:
        parts.append(Panel(status.final_output, title="Output", border_style="green"))
    return Group(*parts)


def print_status(status: WorkflowStatus, console: Optional[Console] = None):
    """Print a one-off rendering of a plan."""
    (console or Console()).print(render_status(status))


class WorkflowDashboard:
    """
    Live view of one plan.

    Refreshes until the plan is terminal or paused.
    """

    def __init__(self, engine, user_id: str, plan_id: str, console: Optional[Console] = None):
        self.engine = engine
        self.user_id = user_id
        self.plan_id = plan_id
        self.console = console or Console()
        self._refresh_rate = 0.2
        self._running = False
        self.layout = self._create_layout()

    def _create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="body"),
            Layout(name="footer", size=3),
        )
        layout["body"].split_row(
            Layout(name="steps", ratio=3),
            Layout(name="stats", ratio=1),
        )
        return layout

    async def _update_layout(self) -> WorkflowStatus:
        status = await self.engine.status(self.user_id, self.plan_id)
        balance = await self.engine.balance(self.user_id)

        self.layout["header"].update(Panel(render_header(status), title="teamflow", border_style="bold blue"))
        self.layout["steps"].update(Panel(render_steps(status), title="Steps", border_style="cyan"))
        self.layout["stats"].update(
            Panel(render_statistics(self.engine.get_statistics(), balance), title="Engine", border_style="magenta")
        )
        now = datetime.now().strftime("%H:%M:%S")
        self.layout["footer"].update(
            Panel(Text(f"Updated {now}  |  Ctrl+C to detach", style="dim"), border_style="dim")
        )
        return status

    async def start(self) -> WorkflowStatus:
        """Follow the plan; returns its last observed status."""
        self._running = True
        status = await self._update_layout()
        with Live(self.layout, console=self.console, refresh_per_second=5):
            while self._running and status.status == PlanStatus.ACTIVE:
                await asyncio.sleep(self._refresh_rate)
                status = await self._update_layout()
        self._running = False
        return status

    def stop(self):
        self._running = False


async def follow_plan(engine, user_id: str, plan_id: str, console: Optional[Console] = None) -> WorkflowStatus:
    """
    Show a live dashboard for a plan, then print its final state.

    Usage:
        status = await engine.submit_task(user, conv, task, wait=False)
        await follow_plan(engine, user, status.plan_id)
    """
    dashboard = WorkflowDashboard(engine, user_id, plan_id, console=console)
    try:
        status = await dashboard.start()
    except asyncio.CancelledError:
        dashboard.stop()
        raise
    print_status(status, dashboard.console)
    return status
