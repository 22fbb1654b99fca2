"""
Scene graph mirror.

SceneGraphSnapshot is the client-side copy of the engine's entity hierarchy.
It is mutated optimistically through the store and replaced wholesale when
the engine pushes an authoritative update.

apply_command() is the single interpretation of the document-mutating
commands. The store uses it to apply optimistic changes and inverses; the
engine simulator uses the same function to play the authoritative side, so
the two can never disagree about what a command means.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

Vec3 = list[float]

# Component tags the engine reports for each spawnable entity type
ENTITY_COMPONENTS: dict[str, list[str]] = {
    "cube": ["Mesh3d", "MeshMaterial3d"],
    "sphere": ["Mesh3d", "MeshMaterial3d"],
    "plane": ["Mesh3d", "MeshMaterial3d"],
    "cylinder": ["Mesh3d", "MeshMaterial3d"],
    "cone": ["Mesh3d", "MeshMaterial3d"],
    "torus": ["Mesh3d", "MeshMaterial3d"],
    "capsule": ["Mesh3d", "MeshMaterial3d"],
    "point_light": ["PointLight"],
    "directional_light": ["DirectionalLight"],
    "spot_light": ["SpotLight"],
    "empty": [],
}


@dataclass
class Transform:
    """Position, Euler rotation (radians) and scale of an entity."""
    position: Vec3 = field(default_factory=lambda: [0.0, 0.0, 0.0])
    rotation: Vec3 = field(default_factory=lambda: [0.0, 0.0, 0.0])
    scale: Vec3 = field(default_factory=lambda: [1.0, 1.0, 1.0])

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": list(self.position),
            "rotation": list(self.rotation),
            "scale": list(self.scale),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Transform":
        data = data or {}
        return cls(
            position=[float(v) for v in data.get("position", [0.0, 0.0, 0.0])],
            rotation=[float(v) for v in data.get("rotation", [0.0, 0.0, 0.0])],
            scale=[float(v) for v in data.get("scale", [1.0, 1.0, 1.0])],
        )


@dataclass
class SceneNode:
    """One entity in the hierarchy."""
    entity_id: str
    name: str
    visible: bool = True
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)
    component_tags: list[str] = field(default_factory=list)
    transform: Transform = field(default_factory=Transform)
    asset_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "entityId": self.entity_id,
            "name": self.name,
            "visible": self.visible,
            "parentId": self.parent_id,
            "children": list(self.children),
            "components": list(self.component_tags),
            "transform": self.transform.to_dict(),
        }
        if self.asset_ref is not None:
            data["assetRef"] = self.asset_ref
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SceneNode":
        return cls(
            entity_id=data["entityId"],
            name=data.get("name", "Entity"),
            visible=data.get("visible", True),
            parent_id=data.get("parentId"),
            children=list(data.get("children", [])),
            component_tags=list(data.get("components", [])),
            transform=Transform.from_dict(data.get("transform")),
            asset_ref=data.get("assetRef"),
        )


@dataclass
class ScriptData:
    """A script attached to an entity."""
    source: str
    enabled: bool = True
    template: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "enabled": self.enabled, "template": self.template}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScriptData":
        return cls(
            source=data.get("source", ""),
            enabled=data.get("enabled", True),
            template=data.get("template"),
        )


@dataclass
class SceneGraphSnapshot:
    """Mirror of the engine-side hierarchy."""
    nodes: dict[str, SceneNode] = field(default_factory=dict)
    root_ids: list[str] = field(default_factory=list)
    asset_ids: set[str] = field(default_factory=set)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self.nodes

    def get(self, entity_id: str) -> SceneNode | None:
        return self.nodes.get(entity_id)

    def copy(self) -> "SceneGraphSnapshot":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": {eid: node.to_dict() for eid, node in self.nodes.items()},
            "rootIds": list(self.root_ids),
            "assetIds": sorted(self.asset_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SceneGraphSnapshot":
        """Build from the engine's scene_graph_update payload."""
        nodes = {
            eid: SceneNode.from_dict({"entityId": eid, **raw})
            for eid, raw in data.get("nodes", {}).items()
        }
        return cls(
            nodes=nodes,
            root_ids=list(data.get("rootIds", [])),
            asset_ids=set(data.get("assetIds", [])),
        )

    def descendants(self, entity_id: str) -> list[str]:
        """Entity ids below entity_id, in pre-order."""
        result: list[str] = []
        node = self.nodes.get(entity_id)
        if node is None:
            return result
        for child_id in node.children:
            result.append(child_id)
            result.extend(self.descendants(child_id))
        return result

    def ancestors(self, entity_id: str) -> list[str]:
        """Entity ids above entity_id, nearest first."""
        result: list[str] = []
        node = self.nodes.get(entity_id)
        while node is not None and node.parent_id is not None:
            result.append(node.parent_id)
            node = self.nodes.get(node.parent_id)
        return result

    def preorder(self) -> list[str]:
        """Every entity id in document order."""
        result: list[str] = []
        for root_id in self.root_ids:
            result.append(root_id)
            result.extend(self.descendants(root_id))
        return result

    def _siblings(self, parent_id: str | None) -> list[str]:
        if parent_id is None:
            return self.root_ids
        return self.nodes[parent_id].children

    def add_node(self, node: SceneNode, index: int | None = None) -> None:
        """Insert a node under its parent (or as a root) at index."""
        if node.parent_id is not None and node.parent_id not in self.nodes:
            logger.warning(f"Parent {node.parent_id} missing for {node.entity_id}; adding as root")
            node.parent_id = None
        self.nodes[node.entity_id] = node
        siblings = self._siblings(node.parent_id)
        if index is None or index >= len(siblings):
            siblings.append(node.entity_id)
        else:
            siblings.insert(max(index, 0), node.entity_id)

    def remove_node(self, entity_id: str) -> list[SceneNode]:
        """Remove a node and its descendants. Returns removed nodes in pre-order."""
        node = self.nodes.get(entity_id)
        if node is None:
            return []
        ordered = [entity_id, *self.descendants(entity_id)]
        removed = [self.nodes[eid] for eid in ordered]
        siblings = self._siblings(node.parent_id) if (
            node.parent_id is None or node.parent_id in self.nodes
        ) else []
        if entity_id in siblings:
            siblings.remove(entity_id)
        for eid in ordered:
            del self.nodes[eid]
        return removed

    def index_of(self, entity_id: str) -> int:
        node = self.nodes[entity_id]
        siblings = self._siblings(node.parent_id)
        return siblings.index(entity_id) if entity_id in siblings else -1

    def reparent(self, entity_id: str, new_parent_id: str | None, index: int | None = None) -> bool:
        node = self.nodes.get(entity_id)
        if node is None:
            return False
        if new_parent_id is not None:
            if new_parent_id not in self.nodes:
                return False
            if new_parent_id == entity_id or new_parent_id in self.descendants(entity_id):
                return False
        old_siblings = self._siblings(node.parent_id)
        if entity_id in old_siblings:
            old_siblings.remove(entity_id)
        node.parent_id = new_parent_id
        siblings = self._siblings(new_parent_id)
        if index is None or index < 0 or index >= len(siblings):
            siblings.append(entity_id)
        else:
            siblings.insert(index, entity_id)
        return True


# --- Command application ---------------------------------------------------

DOCUMENT_COMMANDS = frozenset({
    "spawn_entity",
    "delete_entities",
    "restore_entities",
    "duplicate_entity",
    "rename_entity",
    "set_visibility",
    "update_transform",
    "reparent_entity",
    "set_script",
    "remove_script",
})


def apply_command(
    snapshot: SceneGraphSnapshot,
    scripts: dict[str, ScriptData],
    command: str,
    args: dict[str, Any],
) -> str | None:
    """
    Apply a document command to a snapshot and script table in place.

    Returns None on success or an error message (e.g. unknown entity). Only
    the commands in DOCUMENT_COMMANDS are understood.
    """
    if command == "spawn_entity":
        entity_id = args["entityId"]
        if entity_id in snapshot:
            return f"Entity already exists: {entity_id}"
        entity_type = args.get("entityType", "empty")
        transform = Transform()
        if args.get("position") is not None:
            transform.position = [float(v) for v in args["position"]]
        snapshot.add_node(SceneNode(
            entity_id=entity_id,
            name=args.get("name") or entity_type.replace("_", " ").title(),
            parent_id=args.get("parentId"),
            component_tags=list(ENTITY_COMPONENTS.get(entity_type, [])),
            transform=transform,
        ))
        return None

    if command == "delete_entities":
        missing = [eid for eid in args["entityIds"] if eid not in snapshot]
        if missing:
            return f"Entity not found: {', '.join(missing)}"
        for entity_id in args["entityIds"]:
            for node in snapshot.remove_node(entity_id):
                scripts.pop(node.entity_id, None)
        return None

    if command == "restore_entities":
        for raw in args["entities"]:
            node = SceneNode.from_dict(raw)
            node.children = []
            snapshot.add_node(node, raw.get("insertIndex"))
        for entity_id, raw_script in (args.get("scripts") or {}).items():
            scripts[entity_id] = ScriptData.from_dict(raw_script)
        return None

    if command == "duplicate_entity":
        source = snapshot.get(args["entityId"])
        if source is None:
            return f"Entity not found: {args['entityId']}"
        clone = copy.deepcopy(source)
        clone.entity_id = args["newEntityId"]
        clone.name = args.get("name") or f"{source.name} (Copy)"
        clone.children = []
        snapshot.add_node(clone)
        return None

    if command in ("rename_entity", "set_visibility", "update_transform", "reparent_entity",
                   "set_script", "remove_script"):
        node = snapshot.get(args["entityId"])
        if node is None:
            return f"Entity not found: {args['entityId']}"

        if command == "rename_entity":
            node.name = args["name"]
        elif command == "set_visibility":
            node.visible = bool(args["visible"])
        elif command == "update_transform":
            for key in ("position", "rotation", "scale"):
                if args.get(key) is not None:
                    setattr(node.transform, key, [float(v) for v in args[key]])
        elif command == "reparent_entity":
            if not snapshot.reparent(node.entity_id, args.get("newParentId"), args.get("insertIndex")):
                return f"Cannot reparent {node.entity_id} under {args.get('newParentId')}"
        elif command == "set_script":
            scripts[node.entity_id] = ScriptData(
                source=args["source"],
                enabled=args.get("enabled", True),
                template=args.get("template"),
            )
        else:
            scripts.pop(node.entity_id, None)
        return None

    return f"Not a document command: {command}"
