#!/usr/bin/env python3
"""
Simple Workflow Example
=======================

Runs one workflow from an idea and prints progress as it goes.

Copy config.example.yaml to config.yaml first and point
storage.public_base_url at a server for storage.base_path.
"""

import asyncio
import logging
import os

from reelflow import Config, WorkflowInput, WorkflowSnapshot, build_orchestrator


def show(snapshot: WorkflowSnapshot) -> None:
    counts = snapshot.progress
    print(
        f"{snapshot.stage.value:<16} {counts['percent']:>3}%  "
        f"characters {counts['characters_done']}/{counts['characters_total']}  "
        f"scenes {counts['scenes_done']}/{counts['scenes_total']}  "
        f"videos {counts['videos_done']}/{counts['videos_total']}"
    )


async def main():
    """Simple workflow example."""

    if not os.getenv("GPTPROTO_API_KEY"):
        print("Please set GPTPROTO_API_KEY environment variable")
        return

    logging.basicConfig(level=logging.INFO)
    config = Config.load()
    orchestrator = build_orchestrator(config)
    orchestrator.subscribe(show)

    print("=== Simple Workflow ===")
    try:
        workflow = await orchestrator.start(WorkflowInput(
            title="Paper boat",
            idea="A paper boat drifts through a flooded neon city at night",
        ))
    finally:
        await orchestrator.client.close()

    print(f"\nStatus: {workflow.status.value}")
    for message in workflow.chat:
        print(f"  {message.content}")
    if workflow.merged_url:
        print(f"Final video: {workflow.merged_url}")


if __name__ == "__main__":
    asyncio.run(main())
