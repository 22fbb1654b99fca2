"""
Optimistic State Store - the client-side mirror of the engine's document.

Every mutation goes through an entry point here. Each one:

1. applies the change to the local snapshot immediately (the UI sees it
   without waiting for the engine),
2. records exactly one HistoryEntry holding the forward command and its
   inverse,
3. awaits the authoritative dispatch.

If the dispatch fails, the configured ReconcilePolicy decides what happens:
REVERT rolls the local change back and drops its history entry; AWAIT_PUSH
leaves both alone until the engine's next scene_graph_update replaces the
snapshot wholesale.

Editor state (selection, gizmo, camera, play mode) is not part of the
document and never records history.
"""

import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from forgebridge.config import ReconcilePolicy
from forgebridge.errors import BridgeError, ChannelError, EntityNotFoundError
from forgebridge.scene import (
    SceneGraphSnapshot,
    SceneNode,
    ScriptData,
    apply_command,
)

logger = logging.getLogger(__name__)

Dispatch = Callable[[str, dict[str, Any]], Awaitable[Any]]
ChangeListener = Callable[["SceneStore"], None]


@dataclass(frozen=True)
class EngineCommand:
    """A command addressed to the engine: name plus arguments."""
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"command": self.name, "args": self.args}


@dataclass
class HistoryEntry:
    """One undoable change."""
    forward: EngineCommand
    inverse: EngineCommand
    label: str


@dataclass
class EditorState:
    """Editor and view state. Not part of the document."""
    selected_ids: list[str] = field(default_factory=list)
    primary_id: str | None = None
    gizmo_mode: str = "translate"
    camera_preset: str = "perspective"
    engine_mode: str = "edit"


def new_entity_id() -> str:
    return f"ent_{uuid.uuid4().hex[:12]}"


class SceneStore:
    """
    Optimistic mirror of the scene, scripts and editor state.

    The snapshot and the history stacks are written only by the methods of
    this class.
    """

    def __init__(
        self,
        dispatch: Dispatch | None = None,
        policy: ReconcilePolicy = ReconcilePolicy.REVERT,
    ) -> None:
        self._dispatch = dispatch
        self.policy = policy
        self.snapshot = SceneGraphSnapshot()
        self.scripts: dict[str, ScriptData] = {}
        self.editor = EditorState()
        self._undo_stack: list[HistoryEntry] = []
        self._redo_stack: list[HistoryEntry] = []
        self._listeners: list[ChangeListener] = []

    def bind_dispatch(self, dispatch: Dispatch) -> None:
        self._dispatch = dispatch

    def subscribe(self, listener: ChangeListener) -> None:
        """Call listener after every local or authoritative change."""
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Store listener failed")

    # --- History queries ---------------------------------------------------

    @property
    def can_undo(self) -> bool:
        return bool(self._undo_stack)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo_stack)

    @property
    def undo_stack(self) -> list[HistoryEntry]:
        return list(self._undo_stack)

    @property
    def redo_stack(self) -> list[HistoryEntry]:
        return list(self._redo_stack)

    @property
    def undo_description(self) -> str | None:
        return self._undo_stack[-1].label if self._undo_stack else None

    @property
    def redo_description(self) -> str | None:
        return self._redo_stack[-1].label if self._redo_stack else None

    # --- Internals ---------------------------------------------------------

    async def _send(self, command: EngineCommand) -> Any:
        if self._dispatch is None:
            raise ChannelError("Store has no engine dispatch bound")
        return await self._dispatch(command.name, command.args)

    def _apply_local(self, command: EngineCommand) -> None:
        error = apply_command(self.snapshot, self.scripts, command.name, command.args)
        if error is not None:
            # Local mirror may be stale; the engine stays authoritative.
            logger.warning(f"Local apply of {command.name} failed: {error}")
        self._prune_selection()
        self._notify()

    def _prune_selection(self) -> None:
        live = [eid for eid in self.editor.selected_ids if eid in self.snapshot]
        if live != self.editor.selected_ids:
            self.editor.selected_ids = live
            if self.editor.primary_id not in live:
                self.editor.primary_id = live[-1] if live else None

    async def _commit(self, forward: EngineCommand, inverse: EngineCommand, label: str) -> Any:
        self._apply_local(forward)
        entry = HistoryEntry(forward=forward, inverse=inverse, label=label)
        self._undo_stack.append(entry)
        self._redo_stack.clear()
        logger.debug(f"Applied {label} optimistically")

        try:
            return await self._send(forward)
        except BridgeError as e:
            self._reconcile_failure(entry, e)
            raise

    def _reconcile_failure(self, entry: HistoryEntry, error: BridgeError) -> None:
        if self.policy is ReconcilePolicy.AWAIT_PUSH:
            logger.warning(f"{entry.label} failed ({error}); awaiting authoritative push")
            return
        logger.warning(f"{entry.label} failed ({error}); reverting")
        self._apply_local(entry.inverse)
        if entry in self._undo_stack:
            self._undo_stack.remove(entry)

    def _require(self, entity_id: str) -> SceneNode:
        node = self.snapshot.get(entity_id)
        if node is None:
            raise EntityNotFoundError(entity_id)
        return node

    # --- Document mutations ------------------------------------------------

    async def spawn_entity(
        self,
        entity_type: str,
        name: str | None = None,
        position: list[float] | None = None,
        parent_id: str | None = None,
        entity_id: str | None = None,
    ) -> str:
        """Spawn an entity. The id is generated here so the inverse is known up front."""
        entity_id = entity_id or new_entity_id()
        args: dict[str, Any] = {"entityId": entity_id, "entityType": entity_type}
        if name is not None:
            args["name"] = name
        if position is not None:
            args["position"] = list(position)
        if parent_id is not None:
            args["parentId"] = parent_id
        await self._commit(
            EngineCommand("spawn_entity", args),
            EngineCommand("delete_entities", {"entityIds": [entity_id]}),
            f"Spawn {name or entity_type}",
        )
        return entity_id

    async def delete_entities(self, entity_ids: list[str]) -> None:
        for entity_id in entity_ids:
            self._require(entity_id)
        requested = set(entity_ids)
        order = {eid: position for position, eid in enumerate(self.snapshot.preorder())}
        # Subtree tops in document order: restore rebuilds parents before
        # children and siblings at ascending indexes.
        tops = sorted(
            (eid for eid in requested if requested.isdisjoint(self.snapshot.ancestors(eid))),
            key=order.__getitem__,
        )

        removed: list[dict[str, Any]] = []
        scripts: dict[str, Any] = {}
        for top_id in tops:
            for eid in [top_id, *self.snapshot.descendants(top_id)]:
                raw = self.snapshot.nodes[eid].to_dict()
                if eid == top_id:
                    raw["insertIndex"] = self.snapshot.index_of(top_id)
                removed.append(raw)
                if eid in self.scripts:
                    scripts[eid] = self.scripts[eid].to_dict()

        label = "Delete entity" if len(entity_ids) == 1 else f"Delete {len(entity_ids)} entities"
        await self._commit(
            EngineCommand("delete_entities", {"entityIds": list(entity_ids)}),
            EngineCommand("restore_entities", {"entities": removed, "scripts": scripts}),
            label,
        )

    async def duplicate_entity(self, entity_id: str, name: str | None = None) -> str:
        source = self._require(entity_id)
        new_id = new_entity_id()
        args: dict[str, Any] = {"entityId": entity_id, "newEntityId": new_id}
        if name is not None:
            args["name"] = name
        await self._commit(
            EngineCommand("duplicate_entity", args),
            EngineCommand("delete_entities", {"entityIds": [new_id]}),
            f"Duplicate {source.name}",
        )
        return new_id

    async def rename_entity(self, entity_id: str, name: str) -> None:
        node = self._require(entity_id)
        await self._commit(
            EngineCommand("rename_entity", {"entityId": entity_id, "name": name}),
            EngineCommand("rename_entity", {"entityId": entity_id, "name": node.name}),
            f"Rename {node.name} to {name}",
        )

    async def set_visibility(self, entity_id: str, visible: bool | None = None) -> bool:
        """Show or hide an entity; toggles when visible is None. Returns the new value."""
        node = self._require(entity_id)
        target = (not node.visible) if visible is None else visible
        await self._commit(
            EngineCommand("set_visibility", {"entityId": entity_id, "visible": target}),
            EngineCommand("set_visibility", {"entityId": entity_id, "visible": node.visible}),
            f"{'Show' if target else 'Hide'} {node.name}",
        )
        return target

    async def update_transform(
        self,
        entity_id: str,
        position: list[float] | None = None,
        rotation: list[float] | None = None,
        scale: list[float] | None = None,
    ) -> None:
        node = self._require(entity_id)
        forward: dict[str, Any] = {"entityId": entity_id}
        inverse: dict[str, Any] = {"entityId": entity_id}
        for key, value in (("position", position), ("rotation", rotation), ("scale", scale)):
            if value is not None:
                forward[key] = [float(v) for v in value]
                inverse[key] = list(getattr(node.transform, key))
        await self._commit(
            EngineCommand("update_transform", forward),
            EngineCommand("update_transform", inverse),
            f"Transform {node.name}",
        )

    async def reparent_entity(
        self,
        entity_id: str,
        new_parent_id: str | None,
        insert_index: int | None = None,
    ) -> None:
        node = self._require(entity_id)
        if new_parent_id is not None:
            self._require(new_parent_id)
        forward: dict[str, Any] = {"entityId": entity_id, "newParentId": new_parent_id}
        if insert_index is not None:
            forward["insertIndex"] = insert_index
        inverse = {
            "entityId": entity_id,
            "newParentId": node.parent_id,
            "insertIndex": self.snapshot.index_of(entity_id),
        }
        await self._commit(
            EngineCommand("reparent_entity", forward),
            EngineCommand("reparent_entity", inverse),
            f"Reparent {node.name}",
        )

    async def set_script(
        self,
        entity_id: str,
        source: str,
        enabled: bool = True,
        template: str | None = None,
    ) -> None:
        node = self._require(entity_id)
        previous = self.scripts.get(entity_id)
        if previous is None:
            inverse = EngineCommand("remove_script", {"entityId": entity_id})
        else:
            inverse = EngineCommand("set_script", {"entityId": entity_id, **previous.to_dict()})
        await self._commit(
            EngineCommand("set_script", {
                "entityId": entity_id,
                "source": source,
                "enabled": enabled,
                "template": template,
            }),
            inverse,
            f"Set script on {node.name}",
        )

    async def remove_script(self, entity_id: str) -> bool:
        """Remove a script. Returns False (and records nothing) if there was none."""
        node = self._require(entity_id)
        previous = self.scripts.get(entity_id)
        if previous is None:
            return False
        await self._commit(
            EngineCommand("remove_script", {"entityId": entity_id}),
            EngineCommand("set_script", {"entityId": entity_id, **previous.to_dict()}),
            f"Remove script from {node.name}",
        )
        return True

    # --- History navigation ------------------------------------------------

    async def undo(self) -> HistoryEntry | None:
        """Undo the latest change. Returns the entry undone, or None."""
        if not self._undo_stack:
            return None
        entry = self._undo_stack.pop()
        self._apply_local(entry.inverse)
        self._redo_stack.append(entry)
        try:
            await self._send(entry.inverse)
        except BridgeError as e:
            if self.policy is ReconcilePolicy.REVERT:
                logger.warning(f"Undo of {entry.label} failed ({e}); restoring")
                self._apply_local(entry.forward)
                self._redo_stack.remove(entry)
                self._undo_stack.append(entry)
            raise
        logger.debug(f"Undid {entry.label}")
        return entry

    async def redo(self) -> HistoryEntry | None:
        """Redo the latest undone change. Returns the entry redone, or None."""
        if not self._redo_stack:
            return None
        entry = self._redo_stack.pop()
        self._apply_local(entry.forward)
        self._undo_stack.append(entry)
        try:
            await self._send(entry.forward)
        except BridgeError as e:
            if self.policy is ReconcilePolicy.REVERT:
                logger.warning(f"Redo of {entry.label} failed ({e}); restoring")
                self._apply_local(entry.inverse)
                self._undo_stack.remove(entry)
                self._redo_stack.append(entry)
            raise
        logger.debug(f"Redid {entry.label}")
        return entry

    # --- Editor state ------------------------------------------------------

    async def _send_control(self, name: str, args: dict[str, Any], rollback: Callable[[], None]) -> Any:
        self._notify()
        try:
            return await self._send(EngineCommand(name, args))
        except BridgeError:
            if self.policy is ReconcilePolicy.REVERT:
                rollback()
                self._notify()
            raise

    def _selection_rollback(self) -> Callable[[], None]:
        ids, primary = list(self.editor.selected_ids), self.editor.primary_id

        def restore() -> None:
            self.editor.selected_ids, self.editor.primary_id = ids, primary
        return restore

    async def select_entity(self, entity_id: str, mode: str = "replace") -> list[str]:
        self._require(entity_id)
        rollback = self._selection_rollback()
        selected = list(self.editor.selected_ids)
        if mode == "replace":
            selected = [entity_id]
        elif mode == "add":
            if entity_id not in selected:
                selected.append(entity_id)
        elif mode == "toggle":
            if entity_id in selected:
                selected.remove(entity_id)
            else:
                selected.append(entity_id)
        else:
            raise ValueError(f"Unknown selection mode: {mode}")
        self.editor.selected_ids = selected
        self.editor.primary_id = entity_id if entity_id in selected else (selected[-1] if selected else None)
        await self._send_control("select_entity", {"entityId": entity_id, "mode": mode}, rollback)
        return list(self.editor.selected_ids)

    async def select_entities(self, entity_ids: list[str]) -> list[str]:
        for entity_id in entity_ids:
            self._require(entity_id)
        rollback = self._selection_rollback()
        self.editor.selected_ids = list(dict.fromkeys(entity_ids))
        self.editor.primary_id = self.editor.selected_ids[-1] if self.editor.selected_ids else None
        await self._send_control("select_entities", {"entityIds": list(entity_ids)}, rollback)
        return list(self.editor.selected_ids)

    async def clear_selection(self) -> None:
        rollback = self._selection_rollback()
        self.editor.selected_ids = []
        self.editor.primary_id = None
        await self._send_control("clear_selection", {}, rollback)

    async def set_gizmo_mode(self, mode: str) -> None:
        previous = self.editor.gizmo_mode
        self.editor.gizmo_mode = mode

        def rollback() -> None:
            self.editor.gizmo_mode = previous
        await self._send_control("set_gizmo_mode", {"mode": mode}, rollback)

    async def set_camera_preset(self, preset: str) -> None:
        previous = self.editor.camera_preset
        self.editor.camera_preset = preset

        def rollback() -> None:
            self.editor.camera_preset = previous
        await self._send_control("set_camera_preset", {"preset": preset}, rollback)

    async def set_engine_mode(self, command: str, mode: str) -> None:
        """Run a play-mode command (play, stop, pause, resume) and record the mode."""
        previous = self.editor.engine_mode
        self.editor.engine_mode = mode

        def rollback() -> None:
            self.editor.engine_mode = previous
        await self._send_control(command, {}, rollback)

    # --- Authoritative state -----------------------------------------------

    def apply_authoritative(self, snapshot: SceneGraphSnapshot) -> None:
        """Replace the snapshot wholesale with the engine's."""
        self.snapshot = snapshot
        for entity_id in [eid for eid in self.scripts if eid not in snapshot]:
            del self.scripts[entity_id]
        self._prune_selection()
        self._notify()

    def apply_selection(self, entity_ids: list[str], primary_id: str | None = None) -> None:
        self.editor.selected_ids = [eid for eid in entity_ids if eid in self.snapshot]
        self.editor.primary_id = primary_id if primary_id in self.editor.selected_ids else (
            self.editor.selected_ids[-1] if self.editor.selected_ids else None
        )
        self._notify()

    def load_document(
        self,
        snapshot: SceneGraphSnapshot,
        scripts: dict[str, ScriptData] | None = None,
    ) -> None:
        """Load a new document. Clears both history stacks."""
        self.snapshot = snapshot
        self.scripts = dict(scripts or {})
        self.editor = EditorState(
            gizmo_mode=self.editor.gizmo_mode,
            camera_preset=self.editor.camera_preset,
        )
        self._undo_stack.clear()
        self._redo_stack.clear()
        logger.info(f"Loaded document with {len(snapshot)} entities")
        self._notify()

    def handle_engine_event(self, event_type: str, payload: Any) -> None:
        """Dispatcher event handler for authoritative pushes."""
        if event_type == "scene_graph_update":
            self.apply_authoritative(SceneGraphSnapshot.from_dict(payload or {}))
        elif event_type == "selection_changed":
            payload = payload or {}
            self.apply_selection(payload.get("selectedIds", []), payload.get("primaryId"))
        elif event_type == "engine_mode_changed":
            self.editor.engine_mode = (payload or {}).get("mode", self.editor.engine_mode)
            self._notify()
        elif event_type == "script_changed":
            payload = payload or {}
            entity_id = payload.get("entityId")
            if entity_id is None:
                return
            if payload.get("script") is None:
                self.scripts.pop(entity_id, None)
            else:
                self.scripts[entity_id] = ScriptData.from_dict(payload["script"])
            self._notify()
        else:
            logger.debug(f"Store ignoring event {event_type}")

    def export_state(self) -> dict[str, Any]:
        return {
            "scene": self.snapshot.to_dict(),
            "scripts": {eid: s.to_dict() for eid, s in self.scripts.items()},
            "selection": {
                "selectedIds": list(self.editor.selected_ids),
                "primaryId": self.editor.primary_id,
            },
        }

    def snapshot_copy(self) -> SceneGraphSnapshot:
        return copy.deepcopy(self.snapshot)
