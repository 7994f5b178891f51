"""
Command line interface
======================

Usage:
    trafficsim run --users 20 --journey-mix buyers --concurrency 5
    trafficsim run --users 10 --failure cascading_failure --failure-duration 30
    trafficsim run --continuous --target 8 --timing peak --duration 300
    trafficsim serve --port 8089
    trafficsim journeys
"""

import argparse
import asyncio
import json
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from aiohttp import web
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from trafficsim import __version__
from trafficsim.config import TRAFFIC_TIMINGS, SimulatorConfig, load_config
from trafficsim.control_api import create_app
from trafficsim.data_store import DataStore
from trafficsim.errors import ConfigError, SimulationError
from trafficsim.failures import SCENARIO_NAMES, FailureSimulator
from trafficsim.journeys import JOURNEY_PATTERNS, USER_JOURNEYS, JourneyMix, expected_duration_ms
from trafficsim.logs import configure_logging
from trafficsim.telemetry import setup_tracing
from trafficsim.traffic import TrafficManager, TrafficStats


console = Console()


# =============================================================================
# DISPLAY
# =============================================================================

def _activity_table(manager: TrafficManager, simulator: Optional[FailureSimulator] = None) -> Table:
    """Live view of what each virtual user is doing."""
    failure = simulator.get_failure_status() if simulator else {"active": False}
    title = "🍕 Virtual Traffic"
    if failure["active"]:
        title += f"  [red]⚠ {failure['scenario']} ({failure['progress']}%)[/red]"

    table = Table(title=title, expand=True)
    table.add_column("User", style="cyan", width=18)
    table.add_column("Customer", width=20)
    table.add_column("Journey", style="magenta", width=20)
    table.add_column("Step", justify="right", width=7)
    table.add_column("Progress", justify="right", width=9)
    table.add_column("Activity", style="green")

    for user_id, info in list(manager.get_activity_snapshot().items())[:25]:
        table.add_row(
            user_id,
            info["customer"],
            info["journey"],
            f"{info['step_index'] + 1}/{info['total_steps']}",
            f"{info['progress']:.0f}%",
            info["activity"],
        )

    s = manager.stats
    table.caption = (f"started {s.sessions_started} | completed {s.sessions_completed} | "
                     f"aborted {s.sessions_aborted} | failed {s.sessions_failed} | "
                     f"orders {s.orders_created}")
    return table


def print_summary(stats: TrafficStats):
    console.print("\n")
    console.print(Panel(
        f"""[bold]Virtual Traffic Summary[/bold]

[cyan]Sessions Started:[/cyan]    {stats.sessions_started:,}
[green]Completed:[/green]           {stats.sessions_completed:,}
[yellow]Aborted:[/yellow]             {stats.sessions_aborted:,}
[yellow]Bounced:[/yellow]             {stats.sessions_bounced:,}
[red]Failed:[/red]              {stats.sessions_failed:,}
[cyan]Duration:[/cyan]            {stats.duration:.2f}s
[cyan]Avg Session:[/cyan]         {stats.average_session_duration:.2f}s

[bold]Funnel:[/bold]
  Checkouts Completed:  {stats.checkouts_completed:,}
  Checkouts Abandoned:  {stats.checkouts_abandoned:,}
  Orders Created:       {stats.orders_created:,}
  Reservations:         {stats.reservations_made:,}
  Conversion Rate:      {stats.conversion_rate:.2f}%

[bold]HTTP:[/bold]
  Soft Failures:        {stats.http_failures:,}

[bold]Journeys:[/bold]
{_format_journey_counts(stats)}
""",
        title="📊 Simulation Results",
        border_style="green",
    ))


def _format_journey_counts(stats: TrafficStats) -> str:
    lines = [f"  {name:<22} {count:,}" for name, count in sorted(stats.journey_counts.items())]
    return "\n".join(lines) or "  (none)"


def print_journeys():
    table = Table(title="🗺️  Journey Catalog")
    table.add_column("Journey", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Steps", justify="right")
    table.add_column("Expected", justify="right")
    table.add_column("Description")
    for journey in USER_JOURNEYS:
        table.add_row(
            journey.name,
            f"{journey.weight:g}",
            str(len(journey.steps)),
            f"{expected_duration_ms(journey) / 1000:.0f}s",
            journey.description,
        )
    console.print(table)


def write_report(path: str, manager: TrafficManager, failure: Optional[Dict[str, Any]]):
    report = {
        "generated_at": manager.stats.end_time,
        "base_url": manager.base_url,
        "stats": manager.get_stats(),
        "sessions": manager.recently_completed(),
        "failure": failure,
    }
    Path(path).write_text(json.dumps(report, indent=2, default=str))
    console.print(f"[green]Report saved to {path}[/green]")


# =============================================================================
# COMMANDS
# =============================================================================

def parse_journey_mix(value: Optional[str]) -> JourneyMix:
    """Pattern name, comma-separated weights, or a JSON {name: weight} object."""
    if value is None:
        return None
    value = value.strip()
    if value.startswith("{"):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid journey mix JSON: {e}") from e
    if "," in value or value.replace(".", "", 1).isdigit():
        try:
            return [float(w) for w in value.split(",")]
        except ValueError as e:
            raise ConfigError(f"Invalid journey weights '{value}'") from e
    return value


async def run_traffic(args: argparse.Namespace, config: SimulatorConfig) -> TrafficStats:
    tracer_provider = None
    if args.otlp_endpoint or args.console_spans:
        tracer_provider = setup_tracing(endpoint=args.otlp_endpoint, console=args.console_spans)

    store = DataStore()
    manager = TrafficManager(config, base_url=args.base_url,
                             tracer_provider=tracer_provider, data_store=store)
    simulator = FailureSimulator(store, config.failures)

    console.print(f"\n[bold]Target:[/bold] {manager.base_url}")
    if args.continuous:
        console.print(f"[bold]Continuous:[/bold] target {args.target or config.traffic.target_concurrent_users}  "
                      f"[bold]Timing:[/bold] {args.timing or config.traffic.traffic_timing}  "
                      f"[bold]Spawning for:[/bold] {args.duration:g}s\n")
    else:
        console.print(f"[bold]Users:[/bold] {args.users}  [bold]Concurrency:[/bold] "
                      f"{args.concurrency or config.traffic.concurrency_limit}\n")

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, manager.stop_all)
    except NotImplementedError:
        pass  # Windows: Ctrl-C cancels instead of aborting gracefully

    journey_mix = parse_journey_mix(args.journey_mix)
    spawn_deadline = None
    if args.continuous:
        await manager.start_continuous(args.target, journey_mix, args.timing)
        spawn_deadline = loop.call_later(args.duration, manager.stop_spawning)
    else:
        await manager.start(args.users, journey_mix, args.concurrency)

    failure_result = None
    if args.failure:
        failure_result = simulator.start_failure(args.failure, args.failure_duration)
        if not failure_result["success"]:
            console.print(f"[red]Failure scenario rejected: {failure_result['error']}[/red]")

    try:
        with Live(_activity_table(manager, simulator), console=console, refresh_per_second=2) as live:
            while manager.running:
                live.update(_activity_table(manager, simulator))
                await asyncio.sleep(0.5)
            live.update(_activity_table(manager, simulator))
        stats = await manager.wait()
    finally:
        if spawn_deadline is not None:
            spawn_deadline.cancel()
        await simulator.shutdown()
        if tracer_provider is not None:
            tracer_provider.shutdown()

    print_summary(stats)
    if args.output:
        write_report(args.output, manager, failure_result)
    return stats


def serve(args: argparse.Namespace, config: SimulatorConfig):
    tracer_provider = None
    if args.otlp_endpoint or args.console_spans:
        tracer_provider = setup_tracing(endpoint=args.otlp_endpoint, console=args.console_spans)
    if args.base_url:
        config = replace(config, http=replace(config.http, base_url=args.base_url))

    console.print(f"[bold]Control API[/bold] on http://{args.host}:{args.port} "
                  f"→ driving {config.http.base_url}")
    try:
        web.run_app(create_app(config, tracer_provider=tracer_provider),
                    host=args.host, port=args.port, print=None)
    finally:
        if tracer_provider is not None:
            tracer_provider.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trafficsim",
        description="🍕 Synthetic restaurant traffic and failure injection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-f", help="JSON config file")
    parser.add_argument("--log-level", default="INFO", help="Log level (default INFO)")
    parser.add_argument("--log-json", help="Also write JSON-lines logs to this file")
    parser.add_argument("--otlp-endpoint", help="OTLP/HTTP traces endpoint, e.g. http://localhost:4318/v1/traces")
    parser.add_argument("--console-spans", action="store_true", help="Print finished spans")

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run virtual users against the API")
    run.add_argument("--base-url", "-u", help="Restaurant API base URL")
    run.add_argument("--users", "-n", type=int, default=10, help="Number of virtual users")
    run.add_argument("--concurrency", "-c", type=int, help="Max users running at once")
    run.add_argument("--continuous", action="store_true",
                     help="Keep a target number of users live instead of running a fixed batch")
    run.add_argument("--target", "-t", type=int, help="Continuous mode: target concurrent users")
    run.add_argument("--timing", choices=TRAFFIC_TIMINGS, help="Continuous mode: traffic timing profile")
    run.add_argument("--duration", "-d", type=float, default=60,
                     help="Continuous mode: seconds to keep spawning (default 60)")
    run.add_argument("--journey-mix", "-j",
                     help=f"Pattern ({', '.join(JOURNEY_PATTERNS)}), weights '30,40,20,10,15,10' "
                          f"or JSON {{\"Quick Buyer\": 1}}")
    run.add_argument("--failure", choices=SCENARIO_NAMES, help="Inject a failure scenario during the run")
    run.add_argument("--failure-duration", type=float, default=60, help="Failure duration (seconds)")
    run.add_argument("--output", "-o", help="Output file for JSON report")

    srv = sub.add_parser("serve", help="Start the operator control API")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", "-p", type=int, default=8089)
    srv.add_argument("--base-url", "-u", help="Restaurant API base URL")

    sub.add_parser("journeys", help="Show the journey catalog")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        configure_logging(args.log_level, args.log_json, console)

        if args.command == "journeys":
            print_journeys()
        elif args.command == "serve":
            serve(args, config)
        else:
            asyncio.run(run_traffic(args, config))
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return 2
    except SimulationError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
