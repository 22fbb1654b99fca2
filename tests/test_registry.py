"""
Tests for the ToolRegistry: coverage, two-tier resolution and the
execution boundary.
"""

import pytest

from forgebridge.errors import ChannelError, ManifestError, UnknownCommandError, ValidationError
from forgebridge.handlers import PRIMARY_MODULES, create_registry, legacy
from forgebridge.manifest import CommandManifest, load_manifest
from forgebridge.registry import HandlerKind, HandlerTable, ToolRegistry
from forgebridge.types import HandlerResult, ToolCall


def _manifest(*names: str) -> CommandManifest:
    return CommandManifest.from_dict({
        "version": "1.0",
        "commands": [
            {
                "name": name,
                "description": f"{name} command",
                "category": "query",
                "requiredScope": "scene:read",
                "parameters": {"type": "object", "properties": {}, "required": []},
            }
            for name in names
        ],
    })


class TestCoverage:
    """Every manifest command resolves to exactly one tier."""

    def test_every_command_has_a_handler(self):
        registry = create_registry()
        for name in registry.manifest.names:
            assert registry.tier(name) in ("primary", "legacy"), name

    def test_tiers_are_disjoint(self):
        primary = set()
        for module in PRIMARY_MODULES:
            primary |= set(module.HANDLERS)
        assert primary.isdisjoint(legacy.HANDLERS)
        assert primary | set(legacy.HANDLERS) == set(load_manifest().names)

    def test_missing_handler_is_fatal_when_strict(self):
        with pytest.raises(ManifestError, match="orphan"):
            ToolRegistry(_manifest("orphan"), {})

    def test_overlap_rejected(self):
        table = HandlerTable()

        @table.query("ping")
        async def ping(args, ctx):
            return HandlerResult.ok("pong")

        handlers = table.as_dict()
        with pytest.raises(ManifestError):
            ToolRegistry(_manifest("ping"), handlers, handlers)

    def test_duplicate_registration_rejected(self):
        table = HandlerTable()

        @table.query("ping")
        async def ping(args, ctx):
            return HandlerResult.ok("pong")

        with pytest.raises(ManifestError):
            table.query("ping")(ping)

    def test_handler_kinds(self):
        registry = create_registry()
        assert registry.resolve("rename_entity").kind is HandlerKind.MUTATING
        assert registry.resolve("get_scene_graph").kind is HandlerKind.QUERY
        assert registry.resolve("spawn_entities").kind is HandlerKind.COMPOUND
        assert registry.resolve("undo").kind is HandlerKind.CONTROL
        assert registry.resolve("update_material").kind is HandlerKind.PASSTHROUGH
        assert registry.tier("update_material") == "legacy"

    def test_schemas_for_the_model(self):
        registry = create_registry()
        names = [s["function"]["name"] for s in registry.get_schemas()]
        assert names == registry.manifest.names

    def test_validate_unknown_command(self):
        registry = create_registry()
        with pytest.raises(UnknownCommandError):
            registry.validate("launch_rockets", {})


class TestExecute:
    """The registry boundary turns per-command failures into results."""

    @pytest.mark.asyncio
    async def test_missing_field_never_dispatched(self, bridge, simulator):
        result = await bridge.execute("rename_entity", {"entityId": "e1"})
        assert not result.success
        assert "name" in result.error
        assert simulator.sent == []

    @pytest.mark.asyncio
    async def test_unknown_command(self, bridge, simulator):
        result = await bridge.execute("launch_rockets", {"count": 3})
        assert result.is_error
        assert result.error == "Unknown command: launch_rockets"
        assert simulator.sent == []

    @pytest.mark.asyncio
    async def test_success_is_undoable(self, bridge):
        result = await bridge.execute("spawn_entity", {"entityType": "cube", "name": "Crate"})
        assert result.success
        assert result.undoable
        assert result.result["entityId"] in bridge.store.snapshot

    @pytest.mark.asyncio
    async def test_entity_not_found(self, bridge, simulator):
        result = await bridge.execute("rename_entity", {"entityId": "ghost", "name": "Boo"})
        assert result.error == "Entity not found: ghost"
        assert not result.undoable
        assert simulator.sent == []

    @pytest.mark.asyncio
    async def test_engine_rejection_becomes_result(self, bridge, simulator):
        created = await bridge.execute("spawn_entity", {"entityType": "cube"})
        simulator.options.fail_commands["rename_entity"] = "Entity is locked"
        result = await bridge.execute(
            "rename_entity", {"entityId": created.result["entityId"], "name": "Box"}
        )
        assert result.error == "Entity is locked"
        assert result.to_text() == "Error: Entity is locked"

    @pytest.mark.asyncio
    async def test_channel_error_propagates(self, bridge, simulator):
        simulator.disconnect()
        with pytest.raises(ChannelError):
            await bridge.execute("spawn_entity", {"entityType": "cube"})

    @pytest.mark.asyncio
    async def test_handler_exception_contained(self, bridge):
        table = HandlerTable()

        @table.query("explode")
        async def explode(args, ctx):
            raise RuntimeError("boom")

        registry = ToolRegistry(_manifest("explode"), table.as_dict())
        result = await registry.execute("explode", {}, bridge.context, call_id="call_1")
        assert result.tool_call_id == "call_1"
        assert result.error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_non_strict_registry_reports_unknown(self, bridge):
        registry = ToolRegistry(_manifest("orphan"), {}, strict=False)
        result = await registry.execute("orphan", {}, bridge.context)
        assert result.error == "Unknown command: orphan"

    @pytest.mark.asyncio
    async def test_execute_call(self, bridge):
        call = ToolCall(id="call_7", name="get_mode", arguments={})
        result = await bridge.registry.execute_call(call, bridge.context)
        assert result.tool_call_id == "call_7"
        assert result.result == {"mode": "edit"}

    @pytest.mark.asyncio
    async def test_validated_arguments_reach_handler(self, bridge):
        created = await bridge.execute("spawn_entity", {"entityType": "cube", "position": ["1", 2, 3]})
        node = bridge.store.snapshot.get(created.result["entityId"])
        assert node.transform.position == [1.0, 2.0, 3.0]

    def test_validation_error_lists_problems(self):
        registry = create_registry()
        with pytest.raises(ValidationError) as info:
            registry.validate("rename_entity", {"entityId": 5})
        assert len(info.value.problems) == 2


class TestLegacyTier:
    """Engine-side commands forwarded unchanged."""

    @pytest.mark.asyncio
    async def test_forwarded_unchanged(self, bridge, simulator):
        created = await bridge.execute("spawn_entity", {"entityType": "cube"})
        entity_id = created.result["entityId"]
        args = {"entityId": entity_id, "metallic": 0.8, "baseColor": [1, 0, 0, 1]}

        result = await bridge.execute("update_material", args)
        assert result.success
        assert not result.undoable
        assert simulator.commands[-1] == "update_material"
        assert simulator.args_of(-1) == {"entityId": entity_id, "metallic": 0.8, "baseColor": [1.0, 0.0, 0.0, 1.0]}
        assert len(bridge.store.undo_stack) == 1

    @pytest.mark.asyncio
    async def test_local_catalogue(self, bridge, simulator):
        result = await bridge.execute("list_material_presets")
        assert result.result["count"] == len(legacy.MATERIAL_PRESETS)
        assert simulator.sent == []

    @pytest.mark.asyncio
    async def test_unknown_preset(self, bridge, simulator):
        created = await bridge.execute("spawn_entity", {"entityType": "cube"})
        result = await bridge.execute(
            "apply_material_preset", {"entityId": created.result["entityId"], "presetId": "unobtainium"}
        )
        assert result.error == "Unknown material preset: unobtainium"
        assert simulator.commands == ["spawn_entity"]

    @pytest.mark.asyncio
    async def test_missing_entity(self, bridge, simulator):
        result = await bridge.execute("toggle_physics", {"entityId": "ghost", "enabled": True})
        assert result.error == "Entity not found: ghost"
        assert simulator.sent == []

    def test_handlers_cover_forwarded_and_local_names(self):
        assert set(legacy.HANDLERS) == legacy.FORWARDED_COMMANDS | set(legacy.LOCAL_RESULTS)
