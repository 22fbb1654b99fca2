"""
Tests for the primary handler tables, run through the bridge the way the
UI and the agent loop run them.
"""

import pytest

from forgebridge.handlers.scripting import SCRIPT_TEMPLATES


async def _spawn(bridge, name: str, **extra) -> str:
    result = await bridge.execute("spawn_entity", {"entityType": "cube", "name": name, **extra})
    assert result.success, result.error
    return result.result["entityId"]


class TestEntityCommands:

    @pytest.mark.asyncio
    async def test_update_transform_needs_a_field(self, bridge, simulator):
        entity_id = await _spawn(bridge, "Crate")
        result = await bridge.execute("update_transform", {"entityId": entity_id})
        assert result.error == "Provide at least one of position, rotation or scale"
        assert simulator.commands == ["spawn_entity"]

    @pytest.mark.asyncio
    async def test_update_transform(self, bridge):
        entity_id = await _spawn(bridge, "Crate")
        result = await bridge.execute("update_transform", {"entityId": entity_id, "scale": [2, 2, 2]})
        assert result.result["updated"] == ["scale"]
        assert bridge.store.snapshot.get(entity_id).transform.scale == [2.0, 2.0, 2.0]

    @pytest.mark.asyncio
    async def test_rename_rejects_blank(self, bridge):
        entity_id = await _spawn(bridge, "Crate")
        result = await bridge.execute("rename_entity", {"entityId": entity_id, "name": "   "})
        assert result.error == "Name must not be empty"

    @pytest.mark.asyncio
    async def test_reparent_cycle_rejected(self, bridge):
        group = await _spawn(bridge, "Group")
        child = await _spawn(bridge, "Child", parentId=group)
        result = await bridge.execute("reparent_entity", {"entityId": group, "newParentId": child})
        assert result.error == "Cannot parent an entity under its own descendant"
        result = await bridge.execute("reparent_entity", {"entityId": group, "newParentId": group})
        assert result.error == "An entity cannot be its own parent"

    @pytest.mark.asyncio
    async def test_reparent_to_root(self, bridge, simulator):
        group = await _spawn(bridge, "Group")
        child = await _spawn(bridge, "Child", parentId=group)
        result = await bridge.execute("reparent_entity", {"entityId": child})
        assert result.success
        assert simulator.snapshot.root_ids == [group, child]

    @pytest.mark.asyncio
    async def test_delete_entities_empty(self, bridge):
        result = await bridge.execute("delete_entities", {"entityIds": []})
        assert result.error == "No entities to delete"


class TestCompoundCommands:
    """Step-by-step compounds with per-step outcomes."""

    @pytest.mark.asyncio
    async def test_spawn_entities(self, bridge):
        result = await bridge.execute("spawn_entities", {"entities": [
            {"entityType": "cube", "name": "A"},
            {"entityType": "sphere", "name": "B"},
        ]})
        assert result.success
        assert result.result["success"] is True
        assert result.result["partialSuccess"] is False
        assert len(result.result["entityIds"]) == 2
        assert len(bridge.store.undo_stack) == 2

    @pytest.mark.asyncio
    async def test_spawn_entities_partial(self, bridge, simulator):
        result = await bridge.execute("spawn_entities", {"entities": [
            {"entityType": "cube"},
            {"name": "No type"},
            {"entityType": "cone"},
        ]})
        data = result.result
        assert data["success"] is False
        assert data["partialSuccess"] is True
        assert data["summary"] == "2 of 3 spawns succeeded"
        assert [op["success"] for op in data["operations"]] == [True, False, True]
        assert "entityType" in data["operations"][1]["error"]
        assert simulator.commands == ["spawn_entity", "spawn_entity"]

    @pytest.mark.asyncio
    async def test_spawn_entities_items_validated(self, bridge, simulator):
        result = await bridge.execute("spawn_entities", {"entities": [
            {"entityType": "dragon"},
            {"entityType": "cube"},
        ]})
        assert [op["success"] for op in result.result["operations"]] == [False, True]
        assert simulator.commands == ["spawn_entity"]

    @pytest.mark.asyncio
    async def test_spawn_entities_all_fail(self, bridge, simulator):
        simulator.options.fail_commands["spawn_entity"] = "Out of memory"
        result = await bridge.execute("spawn_entities", {"entities": [{"entityType": "cube"}]})
        assert not result.success
        assert result.error == "0 of 1 spawns succeeded"
        assert len(bridge.store.snapshot) == 0

    @pytest.mark.asyncio
    async def test_arrange_in_grid(self, bridge):
        ids = [await _spawn(bridge, f"Crate {i}") for i in range(4)]
        result = await bridge.execute("arrange_in_grid", {"entityIds": ids, "origin": [10, 1, 0]})
        assert result.result["success"]
        positions = [bridge.store.snapshot.get(i).transform.position for i in ids]
        assert positions == [[10.0, 1.0, 0.0], [12.0, 1.0, 0.0], [10.0, 1.0, 2.0], [12.0, 1.0, 2.0]]

    @pytest.mark.asyncio
    async def test_arrange_skips_missing(self, bridge):
        crate = await _spawn(bridge, "Crate")
        result = await bridge.execute("arrange_in_grid", {"entityIds": [crate, "ghost"], "columns": 1})
        data = result.result
        assert data["partialSuccess"] is True
        assert data["entityIds"] == [crate]
        assert data["operations"][1]["error"] == "Entity not found: ghost"

    @pytest.mark.asyncio
    async def test_compound_undone_step_by_step(self, bridge):
        await bridge.execute("spawn_entities", {"entities": [{"entityType": "cube"}, {"entityType": "cube"}]})
        await bridge.execute("undo")
        assert len(bridge.store.snapshot) == 1
        await bridge.execute("undo")
        assert len(bridge.store.snapshot) == 0


class TestScripting:

    @pytest.mark.asyncio
    async def test_apply_template(self, bridge, simulator):
        entity_id = await _spawn(bridge, "Hero")
        result = await bridge.execute(
            "apply_script_template", {"entityId": entity_id, "template": "character_controller"}
        )
        assert result.success
        script = simulator.scripts[entity_id]
        assert script.source == SCRIPT_TEMPLATES["character_controller"]["source"]
        assert script.template == "character_controller"

    @pytest.mark.asyncio
    async def test_unknown_template_rejected(self, bridge, simulator):
        entity_id = await _spawn(bridge, "Hero")
        result = await bridge.execute("apply_script_template", {"entityId": entity_id, "template": "teleporter"})
        assert result.error.startswith("Invalid arguments for 'apply_script_template'")
        assert simulator.commands == ["spawn_entity"]

    @pytest.mark.asyncio
    async def test_get_and_remove_script(self, bridge):
        entity_id = await _spawn(bridge, "Hero")
        assert (await bridge.execute("get_script", {"entityId": entity_id})).result["script"] is None

        await bridge.execute("set_script", {"entityId": entity_id, "source": "function onStart() {}"})
        script = (await bridge.execute("get_script", {"entityId": entity_id})).result["script"]
        assert script["source"] == "function onStart() {}"

        assert (await bridge.execute("remove_script", {"entityId": entity_id})).success
        result = await bridge.execute("remove_script", {"entityId": entity_id})
        assert result.error == f"Entity {entity_id} has no script"

    @pytest.mark.asyncio
    async def test_list_templates(self, bridge):
        result = await bridge.execute("list_script_templates")
        assert {t["id"] for t in result.result["templates"]} == set(SCRIPT_TEMPLATES)


class TestQueries:
    """Queries are answered from the store and never reach the engine."""

    @pytest.mark.asyncio
    async def test_scene_graph(self, bridge, simulator):
        group = await _spawn(bridge, "Group")
        child = await _spawn(bridge, "Child", parentId=group)
        sent = len(simulator.sent)

        result = await bridge.execute("get_scene_graph")
        assert result.result["count"] == 2
        assert result.result["rootIds"] == [group]
        by_id = {e["entityId"]: e for e in result.result["entities"]}
        assert by_id[group]["children"] == [child]
        assert len(simulator.sent) == sent

    @pytest.mark.asyncio
    async def test_entity_details(self, bridge):
        entity_id = await _spawn(bridge, "Crate")
        await bridge.execute("select_entity", {"entityId": entity_id})
        details = (await bridge.execute("get_entity_details", {"entityId": entity_id})).result
        assert details["name"] == "Crate"
        assert details["selected"] is True
        assert details["script"] is None

    @pytest.mark.asyncio
    async def test_history(self, bridge):
        entity_id = await _spawn(bridge, "Crate")
        await bridge.execute("rename_entity", {"entityId": entity_id, "name": "Box"})
        await bridge.execute("undo")
        history = (await bridge.execute("get_history")).result
        assert history["undoDepth"] == 1
        assert history["redoDepth"] == 1
        assert history["undoDescription"] == "Spawn Crate"


class TestEditorCommands:

    @pytest.mark.asyncio
    async def test_undo_redo_commands(self, bridge):
        assert (await bridge.execute("undo")).error == "Nothing to undo"
        await _spawn(bridge, "Crate")
        assert (await bridge.execute("undo")).result == {"undone": "Spawn Crate"}
        assert (await bridge.execute("redo")).result == {"redone": "Spawn Crate"}
        assert (await bridge.execute("redo")).error == "Nothing to redo"

    @pytest.mark.asyncio
    async def test_play_mode_transitions(self, bridge, simulator):
        assert (await bridge.execute("play")).result == {"mode": "play"}
        assert (await bridge.execute("play")).error == "Cannot play while in play mode"
        assert (await bridge.execute("pause")).result == {"mode": "paused"}
        assert (await bridge.execute("resume")).result == {"mode": "play"}
        assert (await bridge.execute("stop")).result == {"mode": "edit"}
        assert simulator.mode == "edit"
        assert (await bridge.execute("resume")).error == "Cannot resume while in edit mode"

    @pytest.mark.asyncio
    async def test_focus_camera(self, bridge, simulator):
        entity_id = await _spawn(bridge, "Crate")
        assert (await bridge.execute("focus_camera", {"entityId": entity_id})).success
        assert simulator.commands[-1] == "focus_camera"
        assert (await bridge.execute("focus_camera", {"entityId": "ghost"})).error == "Entity not found: ghost"

    @pytest.mark.asyncio
    async def test_selection_is_not_history(self, bridge):
        entity_id = await _spawn(bridge, "Crate")
        result = await bridge.execute("select_entities", {"entityIds": [entity_id]})
        assert result.result == {"selectedIds": [entity_id]}
        assert (await bridge.execute("get_selection")).result["primaryId"] == entity_id
        assert len(bridge.store.undo_stack) == 1
