#!/usr/bin/env python3
"""
CLI Script: Run Workflow
========================

Command-line tool for starting, resuming and inspecting workflows.

Usage:
    python scripts/run_workflow.py start --idea "A paper boat crosses a flooded city"
    python scripts/run_workflow.py start --video-url https://example.com/ref.mp4 --title "Remake"
    python scripts/run_workflow.py start --script-file shots.json
    python scripts/run_workflow.py resume
    python scripts/run_workflow.py status --workflow-id 3f2a...
    python scripts/run_workflow.py list
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from reelflow import (
    Config,
    ReelflowError,
    WorkflowInput,
    WorkflowSnapshot,
    build_orchestrator,
)
from reelflow.workflow.state import progress


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Produce a short AI video from a reference video, an idea or a script",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s start --idea "A cat who runs a night bakery"
  %(prog)s start --video-url https://example.com/ref.mp4
  %(prog)s resume --workflow-id 3f2a9c...
  %(prog)s list
        """,
    )
    parser.add_argument(
        "--config",
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Start a new workflow")
    start.add_argument("--video-url", help="Reference video to derive the script from")
    start.add_argument("--idea", help="Free-form idea used when there is no reference video")
    start.add_argument("--script-file", help="Ready-made script (skips script generation)")
    start.add_argument("--script-prompt", help="Custom instructions for the script model")
    start.add_argument("--title", default="", help="Workflow title")

    resume = commands.add_parser("resume", help="Resume an interrupted workflow")
    resume.add_argument("--workflow-id", help="Workflow to resume (default: most recent active)")

    status = commands.add_parser("status", help="Show the state of a stored workflow")
    status.add_argument("--workflow-id", help="Workflow to show (default: most recent active)")

    commands.add_parser("list", help="List stored workflows")

    return parser.parse_args()


class ProgressPrinter:
    """Prints a line whenever the stage or percentage changes."""

    def __init__(self):
        self._last = None

    def __call__(self, snapshot: WorkflowSnapshot) -> None:
        line = f"[{snapshot.status.value:>11}] {snapshot.stage.value:<16} {snapshot.progress['percent']:>3}%"
        if line != self._last:
            print(line)
            self._last = line


def print_summary(workflow) -> None:
    print("\n" + "-" * 50)
    print(f"Workflow: {workflow.id}")
    print(f"Status:   {workflow.status.value} ({workflow.stage.value})")
    for kind_name, items in (
        ("Characters", workflow.characters),
        ("Scenes", workflow.scenes),
        ("Videos", workflow.videos),
    ):
        print(f"\n{kind_name}:")
        for item in items:
            line = f"  {item.id:<10} {item.status.value:<12}"
            if item.error:
                line += f" {item.error}"
            elif item.url:
                line += f" {item.url}"
            print(line)
    if workflow.merged_url:
        print(f"\nFinal video: {workflow.merged_url}")
    if workflow.merge_error:
        print(f"\nMerge error: {workflow.merge_error}")
    print("=" * 50)


async def main():
    """Main CLI entry point."""
    args = parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = Config.load(args.config)
    if not config.provider.api_key:
        print("Error: GPTPROTO_API_KEY environment variable not set")
        sys.exit(1)

    orchestrator = build_orchestrator(config)

    if args.command == "list":
        workflows = await orchestrator.store.list_for_owner(orchestrator.owner_key)
        if not workflows:
            print("No workflows")
        for workflow in workflows:
            print(
                f"{workflow.id}  {workflow.status.value:<11} {workflow.stage.value:<16} "
                f"{workflow.updated_at:%Y-%m-%d %H:%M}  {workflow.title}"
            )
        return

    if args.command == "status":
        if args.workflow_id:
            workflow = await orchestrator.store.load(args.workflow_id)
        else:
            active = await orchestrator.store.list_active_for_owner(orchestrator.owner_key)
            workflow = active[0] if active else None
        if workflow is None or workflow.owner_key != orchestrator.owner_key:
            print("No matching workflow")
            sys.exit(1)
        print(f"Progress: {progress(workflow)['percent']}%")
        print_summary(workflow)
        return

    orchestrator.subscribe(ProgressPrinter())

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(orchestrator.stop()))
    except NotImplementedError:
        pass

    print("=" * 50)
    print("Reelflow")
    print("=" * 50)

    try:
        if args.command == "start":
            script = None
            if args.script_file:
                script = Path(args.script_file).read_text(encoding="utf-8")
            workflow = await orchestrator.start(WorkflowInput(
                title=args.title,
                source_video_url=args.video_url,
                idea=args.idea,
                script=script,
                script_prompt=args.script_prompt,
            ))
        else:
            workflow = await orchestrator.resume(args.workflow_id)
            if workflow is None:
                print("Nothing to resume")
                return
    except ReelflowError as e:
        print(f"\nError: {e.message}")
        sys.exit(1)
    finally:
        await orchestrator.client.close()

    print_summary(workflow)
    sys.exit(0 if workflow.status.value == "completed" else 1)


if __name__ == "__main__":
    asyncio.run(main())
