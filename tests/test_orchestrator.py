import asyncio

import pytest

from reelflow.api.base import GenerationKind, TaskStatus
from reelflow.core.exceptions import (
    ItemNotFoundError,
    MergeError,
    ProviderError,
    StorageError,
    ValidationError,
)
from reelflow.workflow.models import (
    ItemKind,
    ItemStatus,
    StepStatus,
    WorkflowStage,
    WorkflowStatus,
)
from reelflow.workflow.orchestrator import ItemOverrides, WorkflowInput

from conftest import SCRIPT, FakeGenerationClient, Harness, make_config, wait_for


def _all_items(workflow):
    return workflow.characters + workflow.scenes + workflow.videos


def _dedupe(values):
    result = []
    for value in values:
        if not result or result[-1] != value:
            result.append(value)
    return result


def _status_history(snapshots, item_id):
    history = []
    for snapshot in snapshots:
        for kind in ItemKind:
            for item in snapshot.items(kind):
                if item["id"] == item_id:
                    history.append(item["status"])
    return _dedupe(history)


# =============================================================================
# Full runs
# =============================================================================


def test_end_to_end_run_completes(harness):
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(idea="a courier and her robot")))

    assert workflow.status == WorkflowStatus.COMPLETED
    assert workflow.stage == WorkflowStage.COMPLETED
    assert len(workflow.characters) == 2
    assert len(workflow.scenes) == 3
    assert len(workflow.videos) == 3
    assert all(item.status == ItemStatus.DONE for item in _all_items(workflow))
    assert all(item.durable_url.startswith("https://store.test/") for item in _all_items(workflow))

    # Merged in display order, from the durable copies
    assert harness.merger.calls == [[v.durable_url for v in workflow.videos]]
    assert workflow.merged_url == f"https://store.test/{workflow.id}/merged.mp4"
    assert workflow.merge_status == StepStatus.DONE


def test_stage_progression_is_observed_in_order(harness):
    asyncio.run(harness.orchestrator.start(WorkflowInput(idea="a courier and her robot")))

    stages = _dedupe([s.stage.value for s in harness.snapshots])
    assert stages == [
        "idle", "script", "script_done", "parsing_done",
        "characters", "characters_done",
        "scenes", "scenes_done",
        "videos", "videos_done",
        "merging", "completed",
    ]
    assert harness.snapshots[-1].progress["percent"] == 100


def test_items_poll_before_upload(harness):
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    for item in _all_items(workflow):
        history = _status_history(harness.snapshots, item.id)
        assert history == ["pending", history[1], "polling", "uploading", "done"]
        assert history[1] in ("generating", "submitting")


def test_sync_artifacts_go_straight_to_upload():
    harness = Harness(client=FakeGenerationClient(async_tasks=False))
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    assert workflow.status == WorkflowStatus.COMPLETED
    for item in _all_items(workflow):
        assert "polling" not in _status_history(harness.snapshots, item.id)
    assert harness.client.status_calls == {}


def test_scenes_use_character_images_as_references(harness):
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    edits = [r for r in harness.client.requests if r.kind == GenerationKind.IMAGE_EDIT]
    assert len(edits) == 3
    expected = [c.durable_url for c in workflow.characters]
    assert all(r.reference_images == expected for r in edits)
    assert all(r.model == "gemini-edit" for r in edits)


def test_stage_notifications_are_posted_to_chat(harness):
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    notifications = [m.stage_notification for m in workflow.chat if m.stage_notification]
    assert notifications == ["characters_done", "scenes_done", "videos_done"]
    assert workflow.chat[0].content == "Character images finished: 2/2 ready."


def test_script_is_generated_from_the_source_video(harness):
    workflow = asyncio.run(harness.orchestrator.start(
        WorkflowInput(source_video_url="https://cdn.test/source.mp4")
    ))

    assert harness.client.script_calls == 1
    assert workflow.script == SCRIPT
    assert workflow.script_status == StepStatus.DONE


def test_ready_script_skips_generation(harness):
    asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    assert harness.client.script_calls == 0


def test_start_requires_some_input(harness):
    with pytest.raises(ValidationError):
        asyncio.run(harness.orchestrator.start(WorkflowInput(title="empty")))


def test_every_checkpoint_is_persisted(harness):
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    stored = asyncio.run(harness.store.load(workflow.id))
    assert stored.to_dict() == workflow.to_dict()
    assert harness.store.save_count == len(harness.snapshots)


# =============================================================================
# Videos
# =============================================================================


def test_last_frame_comes_from_the_next_scene():
    harness = Harness(config=make_config(generation={"video_model": "seedance"}))
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    videos = [r for r in harness.client.requests if r.kind == GenerationKind.VIDEO]
    scene_urls = [s.durable_url for s in workflow.scenes]
    assert [r.first_frame for r in videos] == scene_urls
    assert [r.last_frame for r in videos] == [scene_urls[1], scene_urls[2], None]


def test_single_frame_models_get_no_last_frame(harness):
    asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    videos = [r for r in harness.client.requests if r.kind == GenerationKind.VIDEO]
    assert all(r.last_frame is None for r in videos)
    assert all(r.model == "sora-2-pro" and r.duration == 10 for r in videos)


# =============================================================================
# Failures
# =============================================================================


def test_unparseable_script_fails_the_workflow():
    harness = Harness(client=FakeGenerationClient(script="no shots in here"))
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(idea="nothing")))

    assert workflow.status == WorkflowStatus.FAILED
    assert workflow.stage == WorkflowStage.FAILED
    assert workflow.script_status == StepStatus.ERROR
    assert workflow.script_error
    assert harness.client.requests == []


def test_provider_failure_only_affects_its_item(harness):
    harness.client.outcomes["a small grey robot"] = TaskStatus.FAILED
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    robot = workflow.characters[1]
    assert robot.status == ItemStatus.ERROR
    assert robot.error_code == "GenerationError"
    assert robot.prompt == "a small grey robot"
    assert harness.client.prompts().count("a small grey robot") == 1

    assert workflow.characters[0].status == ItemStatus.DONE
    assert all(s.status == ItemStatus.DONE for s in workflow.scenes)
    assert workflow.status == WorkflowStatus.PARTIAL


def test_no_resource_needs_a_manual_retry(harness):
    harness.client.outcomes["Mira running down stairs"] = TaskStatus.UNAVAILABLE

    async def scenario():
        orchestrator = harness.orchestrator
        workflow = await orchestrator.start(WorkflowInput(script=SCRIPT))
        scene = workflow.scenes[1]
        assert scene.status == ItemStatus.ERROR
        assert scene.error_code == "ProviderBusyError"
        assert scene.error == "No resource available (server busy, please try again later)"
        assert harness.client.prompts().count("Mira running down stairs") == 1

        del harness.client.outcomes["Mira running down stairs"]
        await orchestrator.retry_item(ItemKind.SCENE, scene.id)
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.scenes[1].status == ItemStatus.DONE
    assert len(workflow.videos) == 3
    assert workflow.status == WorkflowStatus.COMPLETED


def test_transient_submission_errors_are_retried(harness):
    harness.client.submit_errors = [ProviderError("connection reset", recoverable=True)]
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    assert workflow.status == WorkflowStatus.COMPLETED
    assert len(harness.client.requests) == 2 + 3 + 3 + 1


def test_merge_failure_can_be_retried(harness):
    harness.merger.error = MergeError("all strategies failed", strategy="video_only")

    async def scenario():
        workflow = await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        assert workflow.merge_status == StepStatus.ERROR
        assert workflow.stage == WorkflowStage.VIDEOS_DONE
        assert workflow.status == WorkflowStatus.PARTIAL

        harness.merger.error = None
        return await harness.orchestrator.retry_merge()

    workflow = asyncio.run(scenario())
    assert workflow.merge_status == StepStatus.DONE
    assert workflow.status == WorkflowStatus.COMPLETED
    assert len(harness.merger.calls) == 2


def test_subscriber_errors_do_not_stop_the_run(harness):
    def broken(snapshot):
        raise RuntimeError("render failed")

    harness.orchestrator.subscribe(broken)
    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))

    assert workflow.status == WorkflowStatus.COMPLETED


# =============================================================================
# Stop
# =============================================================================


def test_stop_ends_polls_and_admissions():
    config = make_config(polling={"interval": 0.01, "image_max_attempts": 10000})
    harness = Harness(config=config, client=FakeGenerationClient(pending_polls=10000))

    async def scenario():
        orchestrator = harness.orchestrator
        run = asyncio.create_task(orchestrator.start(WorkflowInput(script=SCRIPT)))
        await wait_for(lambda: orchestrator.workflow is not None and all(
            c.status == ItemStatus.POLLING for c in orchestrator.workflow.characters
        ))
        await orchestrator.stop()
        return await asyncio.wait_for(run, timeout=1.0)

    workflow = asyncio.run(scenario())

    assert workflow.status == WorkflowStatus.STOPPED
    for character in workflow.characters:
        assert character.status == ItemStatus.ERROR
        assert character.error_code == "StoppedError"
        assert character.error == "Polling stopped by user"
        assert character.task_handle
    assert all(s.status == ItemStatus.PENDING for s in workflow.scenes)
    assert harness.client.prompts(GenerationKind.IMAGE_EDIT) == []


def test_retry_after_stop_does_not_revive_the_run():
    config = make_config(polling={"interval": 0.01, "image_max_attempts": 10000})
    client = FakeGenerationClient(pending_polls=10000)
    harness = Harness(config=config, client=client)

    async def scenario():
        orchestrator = harness.orchestrator
        run = asyncio.create_task(orchestrator.start(WorkflowInput(script=SCRIPT)))
        await wait_for(lambda: orchestrator.workflow is not None and all(
            c.status == ItemStatus.POLLING for c in orchestrator.workflow.characters
        ))
        await orchestrator.stop()

        client.pending_polls = 0
        character = orchestrator.workflow.characters[0]
        await orchestrator.retry_item(ItemKind.CHARACTER, character.id)
        return await asyncio.wait_for(run, timeout=1.0)

    workflow = asyncio.run(scenario())

    assert workflow.status == WorkflowStatus.STOPPED
    assert workflow.characters[0].status == ItemStatus.DONE
    assert workflow.characters[1].error_code == "StoppedError"
    assert all(s.status == ItemStatus.PENDING for s in workflow.scenes)
    assert not any(s.prompt in client.prompts() for s in workflow.scenes)
    assert workflow.videos == []
    assert harness.merger.calls == []


# =============================================================================
# Resume
# =============================================================================


def test_resume_reattaches_without_resubmitting():
    config = make_config(polling={"interval": 0.01, "image_max_attempts": 10000})
    client = FakeGenerationClient(pending_polls=10000)
    first = Harness(config=config, client=client)

    async def scenario():
        run = asyncio.create_task(first.orchestrator.start(WorkflowInput(script=SCRIPT)))
        await wait_for(lambda: first.orchestrator.workflow is not None and all(
            c.status == ItemStatus.POLLING for c in first.orchestrator.workflow.characters
        ))
        # Process dies while polling
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run
        await asyncio.sleep(0.05)

        stored = (await first.store.list_active_for_owner("owner-key"))[0]
        assert all(c.status == ItemStatus.POLLING for c in stored.characters)

        # The provider finishes the tasks meanwhile
        client.pending_polls = 0
        for task in client.tasks.values():
            task["remaining"] = 0

        second = Harness(config=config, client=client, store=first.store)
        restored = await second.orchestrator.restore()
        assert restored.status == WorkflowStatus.INTERRUPTED
        assert all(c.status == ItemStatus.INTERRUPTED for c in restored.characters)
        assert all(c.error == "Generation interrupted, please retry" for c in restored.characters)
        return await second.orchestrator.resume()

    workflow = asyncio.run(scenario())

    assert workflow.status == WorkflowStatus.COMPLETED
    for character in workflow.characters:
        assert client.prompts().count(character.prompt) == 1
        assert character.status == ItemStatus.DONE


def test_resume_requeues_items_interrupted_before_submission():
    client = FakeGenerationClient()
    client.gate = asyncio.Event()
    first = Harness(client=client)

    async def scenario():
        run = asyncio.create_task(first.orchestrator.start(WorkflowInput(script=SCRIPT)))
        await wait_for(lambda: len(client.requests) == 2)
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run
        await asyncio.sleep(0.05)

        client.gate = None
        second = Harness(client=client, store=first.store)
        return await second.orchestrator.resume()

    workflow = asyncio.run(scenario())

    assert workflow.status == WorkflowStatus.COMPLETED
    # Interrupted without a handle: submitted again exactly once
    assert client.prompts().count("a young courier with a red scarf") == 2
    assert all(c.status == ItemStatus.DONE for c in workflow.characters)


def test_timed_out_item_is_reattached_on_resume():
    config = make_config(polling={"image_max_attempts": 2})
    client = FakeGenerationClient()
    harness = Harness(config=config, client=client)

    async def scenario():
        orchestrator = harness.orchestrator
        original_generate = client.generate

        async def slow_robot(request):
            result = await original_generate(request)
            if request.prompt == "a small grey robot":
                client.tasks[result.task_handle]["remaining"] = 5
            return result

        client.generate = slow_robot
        workflow = await orchestrator.start(WorkflowInput(script=SCRIPT))
        robot = workflow.characters[1]
        assert robot.status == ItemStatus.ERROR
        assert robot.error_code == "PollTimeoutError"
        handle = robot.task_handle

        client.tasks[handle]["remaining"] = 0
        await orchestrator.resume()
        return workflow, handle

    workflow, handle = asyncio.run(scenario())

    robot = workflow.characters[1]
    assert robot.status == ItemStatus.DONE
    assert robot.artifact_url == f"https://provider.test/{handle}.png"
    assert client.prompts().count("a small grey robot") == 1


def test_resume_after_a_retry_generates_the_new_prompt():
    config = make_config(workflow={"auto_advance": False})
    client = FakeGenerationClient()
    first = Harness(config=config, client=client)

    async def scenario():
        orchestrator = first.orchestrator
        # Both character uploads fail on every attempt
        first.object_store.errors = [StorageError("bucket unavailable") for _ in range(6)]
        workflow = await orchestrator.start(WorkflowInput(script=SCRIPT))
        character = workflow.characters[0]
        assert character.status == ItemStatus.ERROR
        old_artifact = character.artifact_url
        assert old_artifact

        # Process dies while the retry with a new prompt is generating
        client.gate = asyncio.Event()
        retry = asyncio.create_task(orchestrator.retry_item(
            ItemKind.CHARACTER, character.id, ItemOverrides(prompt="a courier with a blue scarf"),
        ))
        await wait_for(lambda: len(client.requests) == 3)
        retry.cancel()
        with pytest.raises(asyncio.CancelledError):
            await retry
        await asyncio.sleep(0.05)

        client.gate = None
        second = Harness(config=config, client=client, store=first.store)
        resumed = await second.orchestrator.resume()
        return resumed, second, old_artifact

    workflow, second, old_artifact = asyncio.run(scenario())

    character = workflow.characters[0]
    assert client.prompts().count("a courier with a blue scarf") == 2
    assert character.status == ItemStatus.DONE
    assert character.artifact_url != old_artifact
    assert list(second.object_store.puts.values()) == [character.artifact_url]


def test_resume_finishes_an_interrupted_upload_without_resubmitting():
    client = FakeGenerationClient(async_tasks=False)
    first = Harness(config=make_config(workflow={"auto_advance": False}), client=client)

    async def scenario():
        uploads = []
        never = asyncio.Event()

        async def hanging_put(source, key=None):
            uploads.append(source)
            await never.wait()

        first.object_store.put = hanging_put
        run = asyncio.create_task(first.orchestrator.start(WorkflowInput(script=SCRIPT)))
        await wait_for(lambda: len(uploads) == 2)
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run
        await asyncio.sleep(0.05)

        second = Harness(config=first.config, client=client, store=first.store)
        restored = await second.orchestrator.restore()
        assert all(c.interrupted_from == ItemStatus.UPLOADING for c in restored.characters)
        workflow = await second.orchestrator.resume()
        return workflow, second, uploads

    workflow, second, uploads = asyncio.run(scenario())

    for character in workflow.characters:
        assert character.status == ItemStatus.DONE
        assert client.prompts().count(character.prompt) == 1
        assert character.artifact_url in uploads
        assert character.artifact_url in second.object_store.puts.values()


def test_restore_without_active_workflow_returns_none(harness):
    assert asyncio.run(harness.orchestrator.restore()) is None
    assert asyncio.run(harness.orchestrator.resume()) is None


# =============================================================================
# Retry and epochs
# =============================================================================


def test_retry_item_applies_overrides(harness):
    async def scenario():
        workflow = await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        scene = workflow.scenes[0]
        epoch = scene.epoch
        await harness.orchestrator.retry_item(
            ItemKind.SCENE, scene.id, ItemOverrides(prompt="rooftop at dawn", size="2K"),
        )
        return workflow, scene, epoch

    workflow, scene, epoch = asyncio.run(scenario())

    request = harness.client.requests[-1]
    assert request.prompt == "rooftop at dawn"
    assert request.size == "2K"
    assert scene.prompt == "rooftop at dawn"
    assert scene.status == ItemStatus.DONE
    assert scene.epoch > epoch


def test_retrying_a_video_merges_again(harness):
    async def scenario():
        workflow = await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        await harness.orchestrator.retry_item(
            ItemKind.VIDEO, workflow.videos[1].id, ItemOverrides(prompt="slower", duration=15),
        )
        return workflow

    workflow = asyncio.run(scenario())

    assert harness.client.requests[-1].duration == 15
    assert len(harness.merger.calls) == 2
    assert workflow.status == WorkflowStatus.COMPLETED


def test_stale_epoch_completion_is_discarded():
    client = FakeGenerationClient()
    client.gate = asyncio.Event()
    harness = Harness(config=make_config(workflow={"auto_advance": False}), client=client)

    async def scenario():
        orchestrator = harness.orchestrator
        run = asyncio.create_task(orchestrator.start(WorkflowInput(script=SCRIPT)))
        await wait_for(lambda: len(client.requests) == 2)

        batch = asyncio.create_task(orchestrator.batch_regenerate(
            ItemKind.CHARACTER, {"char-1": "a courier in a yellow raincoat"},
        ))
        await asyncio.sleep(0.01)
        client.gate.set()
        await run
        await batch
        return orchestrator.workflow

    workflow = asyncio.run(scenario())

    courier, robot = workflow.characters
    assert courier.prompt == "a courier in a yellow raincoat"
    # task-1 and task-2 belonged to the first epoch
    assert courier.artifact_url not in ("https://provider.test/task-1.png", "https://provider.test/task-2.png")
    assert robot.artifact_url not in ("https://provider.test/task-1.png", "https://provider.test/task-2.png")
    assert courier.status == ItemStatus.DONE
    assert robot.status == ItemStatus.DONE
    assert harness.orchestrator.dispatcher.peak["image"] <= 3


def test_deleted_item_completion_is_discarded():
    client = FakeGenerationClient()
    client.gate = asyncio.Event()
    harness = Harness(client=client)

    async def scenario():
        orchestrator = harness.orchestrator
        run = asyncio.create_task(orchestrator.start(WorkflowInput(script=SCRIPT)))
        await wait_for(lambda: len(client.requests) == 2)
        await orchestrator.delete_item(ItemKind.CHARACTER, "char-1")
        client.gate.set()
        return await run

    workflow = asyncio.run(scenario())

    assert [c.id for c in workflow.characters] == ["char-2"]
    assert not any("char-1" in key for key in harness.object_store.puts)
    assert workflow.status == WorkflowStatus.COMPLETED


def test_image_ceiling_holds_across_a_run():
    client = FakeGenerationClient()
    script = SCRIPT.replace('"scenes": [', '"scenes": [' + ", ".join(
        f'{{"id": {n}, "imagePrompt": "extra shot {n}", "videoPrompt": "pan"}}' for n in range(10, 17)
    ) + ", ")
    harness = Harness(client=client)
    asyncio.run(harness.orchestrator.start(WorkflowInput(script=script)))

    assert harness.orchestrator.dispatcher.peak["image"] == 3
    assert harness.orchestrator.dispatcher.peak["video"] <= 2


# =============================================================================
# Structure
# =============================================================================


def test_add_delete_reorder_keep_ids_stable(harness):
    async def scenario():
        orchestrator = harness.orchestrator
        workflow = await orchestrator.start(WorkflowInput(script=SCRIPT))
        assert [s.id for s in workflow.scenes] == ["scene-3", "scene-4", "scene-5"]

        added = await orchestrator.add_item(ItemKind.SCENE, {"prompt": "a bridge"}, insert_after="scene-3")
        assert added.id == "scene-9"
        assert [s.id for s in workflow.scenes] == ["scene-3", "scene-9", "scene-4", "scene-5"]

        await orchestrator.delete_item(ItemKind.SCENE, "scene-9")
        again = await orchestrator.add_item(ItemKind.SCENE, {"prompt": "a tunnel"})
        assert again.id == "scene-10"

        await orchestrator.reorder(ItemKind.SCENE, "scene-5", 0)
        return workflow

    workflow = asyncio.run(scenario())

    assert [s.id for s in workflow.scenes] == ["scene-5", "scene-3", "scene-4", "scene-10"]
    assert workflow.scenes[-1].status == ItemStatus.PENDING


def test_added_character_gets_a_default_name(harness):
    async def scenario():
        await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        return await harness.orchestrator.add_item(ItemKind.CHARACTER, {"prompt": "an old fisherman"})

    character = asyncio.run(scenario())
    assert character.name == "Character 3"
    assert character.status == ItemStatus.PENDING


def test_structural_commands_validate_arguments(harness):
    async def scenario():
        await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        with pytest.raises(ValidationError):
            await harness.orchestrator.add_item(ItemKind.SCENE, {"video_prompt": "no image prompt"})
        with pytest.raises(ItemNotFoundError):
            await harness.orchestrator.delete_item(ItemKind.SCENE, "scene-99")
        with pytest.raises(ItemNotFoundError):
            await harness.orchestrator.retry_item(ItemKind.VIDEO, "char-1")

    asyncio.run(scenario())


def test_reordering_videos_changes_merge_order(harness):
    async def scenario():
        workflow = await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        last = workflow.videos[-1]
        await harness.orchestrator.reorder(ItemKind.VIDEO, last.id, 0)
        assert workflow.merge_status == StepStatus.PENDING
        await harness.orchestrator.retry_merge()
        return workflow

    workflow = asyncio.run(scenario())
    assert harness.merger.calls[-1] == [v.durable_url for v in workflow.videos]
    assert harness.merger.calls[-1][0].endswith(f"{workflow.videos[0].id}.mp4")


def test_update_script_reparses_with_fresh_ids(harness):
    async def scenario():
        await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        return await harness.orchestrator.update_script("Image 1 | a harbor\nVideo 1 | waves roll in")

    workflow = asyncio.run(scenario())

    assert workflow.characters == []
    assert [s.id for s in workflow.scenes] == ["scene-9"]
    assert workflow.videos == []
    assert workflow.stage == WorkflowStage.CHARACTERS_DONE
    assert workflow.status == WorkflowStatus.WAITING
    assert workflow.merged_url is None


# =============================================================================
# Waiting between collections
# =============================================================================


def test_manual_advance_pauses_between_collections():
    harness = Harness(config=make_config(workflow={"auto_advance": False}))

    async def scenario():
        orchestrator = harness.orchestrator
        workflow = await orchestrator.start(WorkflowInput(script=SCRIPT))
        assert workflow.status == WorkflowStatus.WAITING
        assert workflow.stage == WorkflowStage.CHARACTERS_DONE
        assert all(s.status == ItemStatus.PENDING for s in workflow.scenes)

        await orchestrator.advance()
        assert workflow.status == WorkflowStatus.WAITING
        assert workflow.stage == WorkflowStage.SCENES_DONE

        await orchestrator.advance()
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.status == WorkflowStatus.COMPLETED


# =============================================================================
# Snapshots and chat
# =============================================================================


def test_snapshot_is_read_only(harness):
    async def scenario():
        await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        return harness.orchestrator.snapshot()

    snapshot = asyncio.run(scenario())

    assert snapshot.status == WorkflowStatus.COMPLETED
    assert isinstance(snapshot.items(ItemKind.SCENE), tuple)
    with pytest.raises(TypeError):
        snapshot.data["title"] = "changed"
    with pytest.raises(TypeError):
        snapshot.items(ItemKind.SCENE)[0]["prompt"] = "changed"


def test_unsubscribe_stops_delivery(harness):
    received = []

    async def scenario():
        unsubscribe = harness.orchestrator.subscribe(received.append)
        await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        count = len(received)
        unsubscribe()
        await harness.orchestrator.add_chat_message("user", "make it rain")
        return count

    count = asyncio.run(scenario())
    assert count > 0
    assert len(received) == count


def test_chat_messages_are_checkpointed(harness):
    async def scenario():
        workflow = await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        await harness.orchestrator.add_chat_message("user", "make it rain")
        return await harness.store.load(workflow.id)

    stored = asyncio.run(scenario())
    assert stored.chat[-1].content == "make it rain"
    assert stored.chat[-1].role == "user"


# =============================================================================
# Edits and uploads
# =============================================================================


def test_update_item_edits_without_regenerating(harness):
    async def scenario():
        workflow = await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        character = workflow.characters[0]
        submissions = len(harness.client.requests)
        await harness.orchestrator.update_item(
            ItemKind.CHARACTER, character.id, {"name": "Mira Vale", "prompt": "a courier in a raincoat"},
        )
        assert len(harness.client.requests) == submissions
        return await harness.store.load(workflow.id)

    stored = asyncio.run(scenario())

    character = stored.characters[0]
    assert character.name == "Mira Vale"
    assert character.prompt == "a courier in a raincoat"
    assert character.status == ItemStatus.DONE


def test_update_item_rejects_reserved_and_unknown_fields(harness):
    async def scenario():
        workflow = await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        scene = workflow.scenes[0]
        for changes in ({"status": "pending"}, {"durable_url": "https://x/y.png"}, {"epoch": 99},
                        {"artifact_url": "https://x/y.png"}, {"colour": "red"}, {"prompt": "  "}):
            with pytest.raises(ValidationError):
                await harness.orchestrator.update_item(ItemKind.SCENE, scene.id, changes)
        return scene

    scene = asyncio.run(scenario())
    assert scene.status == ItemStatus.DONE
    assert scene.prompt == "Mira and Tobi on a rooftop"


def test_uploaded_character_image_replaces_the_generated_one(harness):
    async def scenario():
        workflow = await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        character = workflow.characters[1]
        epoch = character.epoch
        submissions = len(harness.client.requests)
        await harness.orchestrator.upload_item_image(ItemKind.CHARACTER, character.id, b"png-bytes")
        assert len(harness.client.requests) == submissions
        return workflow, character, epoch

    workflow, character, epoch = asyncio.run(scenario())

    key = next(k for k in harness.object_store.puts if k.endswith(f"/{character.id}.png"))
    assert harness.object_store.puts[key] == b"png-bytes"
    assert character.status == ItemStatus.DONE
    assert character.epoch > epoch
    assert character.artifact_url is None
    assert character.url == f"https://store.test/{key}"
    assert _status_history(harness.snapshots, character.id)[-2:] == ["uploading", "done"]
    assert workflow.status == WorkflowStatus.COMPLETED


def test_upload_discards_a_generation_still_running():
    client = FakeGenerationClient()
    client.gate = asyncio.Event()
    harness = Harness(client=client)

    async def scenario():
        orchestrator = harness.orchestrator
        run = asyncio.create_task(orchestrator.start(WorkflowInput(script=SCRIPT)))
        await wait_for(lambda: len(client.requests) == 2)
        character = orchestrator.workflow.characters[0]
        await orchestrator.upload_item_image(ItemKind.CHARACTER, character.id, b"hand-drawn", suffix=".jpg")
        assert character.status == ItemStatus.DONE

        client.gate.set()
        workflow = await asyncio.wait_for(run, timeout=2.0)
        return workflow, character

    workflow, character = asyncio.run(scenario())

    assert character.status == ItemStatus.DONE
    assert character.durable_url.endswith(f"/{character.id}.jpg")
    assert character.task_handle is None
    assert workflow.status == WorkflowStatus.COMPLETED


def test_upload_rejects_videos_and_empty_files(harness):
    async def scenario():
        workflow = await harness.orchestrator.start(WorkflowInput(script=SCRIPT))
        with pytest.raises(ValidationError):
            await harness.orchestrator.upload_item_image(ItemKind.VIDEO, workflow.videos[0].id, b"mp4")
        with pytest.raises(ValidationError):
            await harness.orchestrator.upload_item_image(ItemKind.CHARACTER, workflow.characters[0].id, b"")

    asyncio.run(scenario())


def test_commands_can_run_on_separate_event_loops():
    config = make_config(polling={"interval": 0.001}, concurrency={"max_videos": 1})
    harness = Harness(config=config, client=FakeGenerationClient(pending_polls=2))

    workflow = asyncio.run(harness.orchestrator.start(WorkflowInput(script=SCRIPT)))
    assert workflow.status == WorkflowStatus.COMPLETED

    asyncio.run(harness.orchestrator.batch_regenerate(ItemKind.VIDEO))

    assert all(v.status == ItemStatus.DONE for v in workflow.videos)
    assert len(harness.merger.calls) == 2
    assert workflow.status == WorkflowStatus.COMPLETED
