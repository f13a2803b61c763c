"""Command-line entry point for mangaloom: plan and render episodes without the API."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

from rich.console import Console
from rich.table import Table
from tqdm import tqdm

from models.episode import PAGES_PER_EPISODE, Episode
from models.events import (
    EpisodeEvent,
    PageDone,
    PageFailed,
    PageProgress,
    PlanningComplete,
    PlanningProgress,
    PlanningStarted,
)
from services.episode_repository import create_repository
from services.errors import MangaloomError
from services.event_bus import EventBus
from services.orchestrator import GenerationOrchestrator, validate_seed_payload
from services.planner_service import PlannerService
from services.r2_storage import get_r2_storage
from services.renderer_service import RendererService
from utils.config import load_config, setup_logging, validate_config

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    "queued": "dim",
    "in_progress": "yellow",
    "done": "green",
    "failed": "red",
}


class PageProgressBars:
    """Progress bars driven by episode events."""

    def __init__(self):
        self.page_bars: Dict[int, tqdm] = {}
        self.overall_bar: Optional[tqdm] = None
        self.failed_pages: list[int] = []

    def __call__(self, event: EpisodeEvent) -> None:
        if isinstance(event, (PlanningStarted, PlanningProgress, PlanningComplete)):
            if event.message:
                logger.info(event.message)
            return

        if self.overall_bar is None:
            self.overall_bar = tqdm(
                total=PAGES_PER_EPISODE,
                desc="Episode",
                unit="page",
                position=0,
                leave=True,
            )

        if event.page == 0:
            # Whole run failed before any page was attempted
            logger.error(f"Generation failed: {event.error}")
            return

        bar = self.page_bars.get(event.page)
        if bar is None:
            bar = tqdm(
                total=100,
                desc=f"  Page {event.page:02d}",
                unit="%",
                position=1,
                leave=False,
            )
            self.page_bars[event.page] = bar

        if isinstance(event, PageProgress):
            bar.n = event.pct
        elif isinstance(event, PageDone):
            bar.n = 100
            bar.set_description(f"  Page {event.page:02d} ✓ v{event.version}")
            bar.close()
            self.overall_bar.update(1)
        elif isinstance(event, PageFailed):
            bar.set_description(f"  Page {event.page:02d} ✗")
            bar.close()
            self.failed_pages.append(event.page)
            self.overall_bar.update(1)
        bar.refresh()

    def close(self):
        """Close all progress bars."""
        if self.overall_bar:
            self.overall_bar.close()
        for bar in self.page_bars.values():
            bar.close()


class MangaloomApp:
    """Wires the orchestrator for one CLI invocation."""

    def __init__(self, config: dict):
        self.config = config
        self.console = Console()
        storage = get_r2_storage(config)
        self.events = EventBus()
        self.repository = create_repository(config)
        self.renderer = RendererService(
            api_key=config.get("gemini_api_key"),
            model_name=config["renderer_image_model"],
            storage=storage,
        )
        self.orchestrator = GenerationOrchestrator(
            repository=self.repository,
            event_bus=self.events,
            planner=PlannerService(
                api_key=config.get("gemini_api_key"),
                model_name=config["planner_model"],
            ),
            renderer=self.renderer,
            storage=storage,
            page_backoff_seconds=config["page_backoff_seconds"],
            regenerate_backoff_seconds=config["regenerate_backoff_seconds"],
        )

    async def __aenter__(self) -> "MangaloomApp":
        await self.repository.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.orchestrator.wait_for_background_tasks()
        await self.renderer.close()
        await self.repository.close()

    async def plan(self, seed_path: Path) -> str:
        """Plan an episode from a JSON seed file and print its outline."""
        payload = json.loads(seed_path.read_text(encoding="utf-8"))
        seed = validate_seed_payload(payload)

        result = await self.orchestrator.plan_episode(seed)
        self.console.print(f"\n[bold cyan]Episode:[/bold cyan] {result.episode_id}")
        for page in result.outline.pages:
            self.console.print(f"  [bold]{page.page_number:2d}.[/bold] {page.beat}")
        self.console.print()
        return result.episode_id

    async def generate(self, episode_id: str) -> int:
        """Render all pages with progress bars.

        Returns:
            Number of failed pages
        """
        bars = PageProgressBars()
        subscription = self.events.subscribe(episode_id)
        task = self.orchestrator.launch_generation(episode_id)
        try:
            while True:
                getter = asyncio.ensure_future(subscription.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    bars(getter.result())
                    continue
                getter.cancel()
                break
            for event in subscription.drain():
                bars(event)
        finally:
            subscription.close()
            bars.close()

        await self.show(episode_id)
        return len(bars.failed_pages)

    async def show(self, episode_id: str) -> Episode:
        """Print page statuses of an episode."""
        episode = await self.orchestrator.get_episode(episode_id)

        table = Table(title=f"{episode.seed.title} ({episode.id})")
        table.add_column("Page", justify="right")
        table.add_column("Status")
        table.add_column("Version", justify="right")
        table.add_column("Image / Error")
        for page in episode.pages:
            style = STATUS_STYLES.get(page.status.value, "")
            table.add_row(
                str(page.page_number),
                f"[{style}]{page.status.value}[/{style}]",
                str(page.version),
                page.error or page.image_url or "",
            )
        self.console.print(table)
        return episode


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Mangaloom manga episode generator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mangaloom plan seed.json              # Plan an episode (set DATABASE_PATH to keep it)
  mangaloom generate seed.json          # Plan and render all ten pages
  mangaloom generate --episode-id ID    # Render a previously planned episode
  mangaloom show ID                     # Show page statuses
        """,
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_parser = subparsers.add_parser("plan", help="Plan an episode from a seed file")
    plan_parser.add_argument("seed_file", type=Path)

    generate_parser = subparsers.add_parser("generate", help="Plan (optionally) and render pages")
    generate_parser.add_argument("seed_file", type=Path, nargs="?")
    generate_parser.add_argument("--episode-id", help="Render an existing episode instead of planning")

    show_parser = subparsers.add_parser("show", help="Show an episode's page statuses")
    show_parser.add_argument("episode_id")

    args = parser.parse_args()
    if args.command == "generate" and not (args.seed_file or args.episode_id):
        parser.error("generate needs a seed file or --episode-id")

    config = load_config()
    setup_logging(args.log_level or config["log_level"])
    for problem in validate_config(config):
        logger.warning(problem)

    async def run() -> int:
        async with MangaloomApp(config) as app:
            if args.command == "plan":
                await app.plan(args.seed_file)
                return 0
            if args.command == "show":
                await app.show(args.episode_id)
                return 0
            episode_id = args.episode_id or await app.plan(args.seed_file)
            failed = await app.generate(episode_id)
            return 1 if failed else 0

    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except (MangaloomError, OSError, json.JSONDecodeError) as e:
        logger.error(f"mangaloom failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
