"""
Force-directed layout engine.

A d3-force style simulation (link springs, many-body repulsion, centering,
collision, plus per-slot positioning in timeline mode) vectorized with numpy.
The engine is an owned object: callers `configure` the mode and hand it each
new node/link set through `reconcile`, which carries position, velocity and
pin state over by node id so incremental graph updates don't reset motion.
"""
from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from config import VIEWPORT_MARGIN_PX
from models_graph import GraphLink, GraphNode, LayoutMode, LayoutState

logger = logging.getLogger("constellations")

ALPHA_MIN = 0.001
ALPHA_DECAY = 1 - ALPHA_MIN ** (1 / 300)
VELOCITY_DECAY = 0.4
GENTLE_ALPHA = 0.3
NEIGHBOR_JITTER_PX = 100.0
PHYLLOTAXIS_RADIUS = 10.0
PHYLLOTAXIS_ANGLE = math.pi * (3 - math.sqrt(5))


class NodeShape(str, Enum):
    POINT = "point"  # people: small circle
    BOX = "box"      # things in the network: image tile or text pill
    CARD = "card"    # things on the timeline: wide card


@dataclass(frozen=True)
class ForceSettings:
    link_distance: float
    link_strength: float
    charge_strength: float
    center_strength: float
    collide_strength: float = 1.0
    timeline: bool = False
    slot_spacing: float = 0.0
    slot_offset: float = 0.0
    slot_strength_x: float = 0.0
    slot_strength_y: float = 0.0
    undated_strength: float = 0.0


def force_settings(mode: LayoutMode, compact: bool) -> ForceSettings:
    if mode is LayoutMode.TIMELINE:
        return ForceSettings(
            link_distance=60.0 if compact else 150.0,
            link_strength=0.3,
            charge_strength=-200.0,
            center_strength=0.02,
            timeline=True,
            slot_spacing=150.0 if compact else 220.0,
            slot_offset=80.0 if compact else 120.0,
            slot_strength_x=0.5,
            slot_strength_y=0.3,
            undated_strength=0.05,
        )
    return ForceSettings(
        link_distance=60.0 if compact else 150.0,
        link_strength=1.0,
        charge_strength=-200.0 if compact else -600.0,
        center_strength=0.8,
    )


def node_shape(node: GraphNode, mode: LayoutMode) -> NodeShape:
    if node.is_person:
        return NodeShape.POINT
    return NodeShape.CARD if mode is LayoutMode.TIMELINE else NodeShape.BOX


def collision_radius(node: GraphNode, mode: LayoutMode, compact: bool, text_only: bool = False) -> float:
    shape = node_shape(node, mode)
    if shape is NodeShape.POINT:
        radius = 30.0
    elif shape is NodeShape.CARD:
        radius = 100.0
    elif node.image_url and not text_only:
        radius = 40.0
    else:
        # Text pill: half the label width plus padding (about 7px per character)
        radius = min(120.0, len(node.title) * 3.5 + 10.0)
    return radius * 0.8 * (0.6 if compact else 1.0)


@dataclass(frozen=True)
class Viewport:
    """Pan/zoom transform (screen = world * k + t) and the visible screen size."""
    width: float
    height: float
    tx: float = 0.0
    ty: float = 0.0
    k: float = 1.0

    def contains(self, x: float, y: float, margin: float = VIEWPORT_MARGIN_PX) -> bool:
        sx = x * self.k + self.tx
        sy = y * self.k + self.ty
        return -margin <= sx <= self.width + margin and -margin <= sy <= self.height + margin


class LayoutEngine:
    def __init__(
        self,
        width: float = 1200.0,
        height: float = 800.0,
        mode: LayoutMode = LayoutMode.NETWORK,
        compact: bool = False,
        text_only: bool = False,
        seed: Optional[int] = None,
    ):
        self.width = width
        self.height = height
        self.mode = mode
        self.compact = compact
        self.text_only = text_only
        self.settings = force_settings(mode, compact)
        self.alpha = 1.0
        self.alpha_target = 0.0
        self._rng = random.Random(seed)

        self.nodes: List[GraphNode] = []
        self.links: List[GraphLink] = []
        self._index: Dict[int, int] = {}
        self._pos = np.zeros((0, 2))
        self._vel = np.zeros((0, 2))
        self._fixed = np.zeros((0, 2))
        self._pinned = np.zeros(0, dtype=bool)
        self._radius = np.zeros(0)
        self._link_src = np.zeros(0, dtype=int)
        self._link_tgt = np.zeros(0, dtype=int)
        self._link_bias = np.zeros(0)
        self._target = np.zeros((0, 2))
        self._target_strength = np.zeros((0, 2))

    @property
    def center(self) -> Tuple[float, float]:
        return self.width / 2, self.height / 2

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, mode: LayoutMode, compact: bool, text_only: Optional[bool] = None) -> None:
        """Switch layout mode/density; the simulation is reheated so nodes travel to the new layout."""
        self.mode = mode
        self.compact = compact
        if text_only is not None:
            self.text_only = text_only
        self.settings = force_settings(mode, compact)
        self._rebuild_forces()
        self.alpha = 1.0

    def reconcile(self, nodes: Sequence[GraphNode], links: Sequence[GraphLink]) -> bool:
        """
        Replace the simulated node/link set.

        Nodes already simulated (matched by id) keep position, velocity and pin
        state, copied into the incoming objects when they are new instances.
        New nodes start next to a placed neighbor, or spiral out from the
        center. Links whose endpoints are missing are dropped.

        Returns True when the structure changed (node or link set differs),
        which reheats the simulation fully; otherwise it re-settles gently.
        """
        previous = {n.id: n for n in self.nodes}
        previous_link_ids = {l.id for l in self.links}

        for node in nodes:
            old = previous.get(node.id)
            if old is not None and old is not node:
                node.layout = old.layout.copy()

        self.nodes = list(nodes)
        self._index = {n.id: i for i, n in enumerate(self.nodes)}
        self.links = [
            l for l in links
            if l.source_id in self._index and l.target_id in self._index and l.source_id != l.target_id
        ]
        self._place_new_nodes()

        structural = (
            set(previous) != set(self._index)
            or previous_link_ids != {l.id for l in self.links}
        )
        self._load_arrays()
        self._rebuild_forces()
        if structural:
            self.alpha = 1.0
        else:
            self.alpha = max(self.alpha, GENTLE_ALPHA)
        return structural

    def _place_new_nodes(self) -> None:
        neighbors: Dict[int, List[int]] = {}
        for l in self.links:
            neighbors.setdefault(l.source_id, []).append(l.target_id)
            neighbors.setdefault(l.target_id, []).append(l.source_id)

        cx, cy = self.center
        pending = [n for n in self.nodes if not n.layout.has_position]
        # Several passes so chains of new nodes can anchor on each other
        for _ in range(3):
            still_pending = []
            for node in pending:
                anchor = next(
                    (
                        self.nodes[self._index[i]] for i in neighbors.get(node.id, [])
                        if self.nodes[self._index[i]].layout.has_position
                    ),
                    None,
                )
                if anchor is None:
                    still_pending.append(node)
                    continue
                self._set_position(
                    node,
                    anchor.layout.x + (self._rng.random() - 0.5) * NEIGHBOR_JITTER_PX,
                    anchor.layout.y + (self._rng.random() - 0.5) * NEIGHBOR_JITTER_PX,
                )
            pending = still_pending

        for i, node in enumerate(pending):
            radius = PHYLLOTAXIS_RADIUS * math.sqrt(0.5 + i)
            angle = i * PHYLLOTAXIS_ANGLE
            self._set_position(node, cx + radius * math.cos(angle), cy + radius * math.sin(angle))

    @staticmethod
    def _set_position(node: GraphNode, x: float, y: float) -> None:
        pinned = node.layout.pinned
        node.layout = LayoutState(x=x, y=y, has_position=True, pinned=pinned)

    def _load_arrays(self) -> None:
        n = len(self.nodes)
        self._pos = np.array([[nd.layout.x, nd.layout.y] for nd in self.nodes], dtype=float).reshape(n, 2)
        self._vel = np.array([[nd.layout.vx, nd.layout.vy] for nd in self.nodes], dtype=float).reshape(n, 2)
        self._pinned = np.array([nd.layout.pinned is not None for nd in self.nodes], dtype=bool)
        self._fixed = np.array(
            [nd.layout.pinned if nd.layout.pinned is not None else (0.0, 0.0) for nd in self.nodes],
            dtype=float,
        ).reshape(n, 2)

        self._link_src = np.array([self._index[l.source_id] for l in self.links], dtype=int)
        self._link_tgt = np.array([self._index[l.target_id] for l in self.links], dtype=int)
        count = np.bincount(np.concatenate([self._link_src, self._link_tgt]), minlength=n).astype(float)
        if self.links:
            self._link_bias = count[self._link_src] / (count[self._link_src] + count[self._link_tgt])
        else:
            self._link_bias = np.zeros(0)

    def _rebuild_forces(self) -> None:
        n = len(self.nodes)
        self._radius = np.array(
            [collision_radius(nd, self.mode, self.compact, self.text_only) for nd in self.nodes], dtype=float
        )
        self._target = np.zeros((n, 2))
        self._target_strength = np.zeros((n, 2))
        if not self.settings.timeline or n == 0:
            return

        s = self.settings
        for index, node_x, node_y in self.timeline_slots():
            self._target[index] = (node_x, node_y)
            self._target_strength[index] = (s.slot_strength_x, s.slot_strength_y)
        for i, node in enumerate(self.nodes):
            if node.year is None:
                self._target[i] = self.undated_anchor()
                self._target_strength[i] = (s.undated_strength, s.undated_strength)

    def undated_anchor(self) -> Tuple[float, float]:
        """Timeline spot for nodes without a year: centered, below the band of dated slots."""
        cx, cy = self.center
        return cx, cy + 3 * force_settings(LayoutMode.TIMELINE, self.compact).slot_offset

    def timeline_slots(self) -> List[Tuple[int, float, float]]:
        """(node index, slot x, slot y) for dated nodes, ordered by (year, id)."""
        dated = sorted(
            (i for i, n in enumerate(self.nodes) if n.year is not None),
            key=lambda i: (self.nodes[i].year, self.nodes[i].id),
        )
        cx, cy = self.center
        s = force_settings(LayoutMode.TIMELINE, self.compact)
        spacing, offset = s.slot_spacing, s.slot_offset
        first = cx - (len(dated) - 1) * spacing / 2
        return [
            (i, first + slot * spacing, cy + (offset if slot % 2 else -offset))
            for slot, i in enumerate(dated)
        ]

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _jiggle(self) -> float:
        return (self._rng.random() - 0.5) * 1e-6

    def _pairwise(self, points: np.ndarray) -> np.ndarray:
        """delta[i, j] = points[j] - points[i], with coincident pairs nudged apart."""
        delta = points[None, :, :] - points[:, None, :]
        coincident = (delta[:, :, 0] == 0) & (delta[:, :, 1] == 0)
        np.fill_diagonal(coincident, False)
        if coincident.any():
            idx = np.argwhere(coincident)
            for i, j in idx:
                if i < j:
                    jx, jy = self._jiggle(), self._jiggle()
                    delta[i, j] = (jx, jy)
                    delta[j, i] = (-jx, -jy)
        return delta

    def _apply_links(self, alpha: float) -> None:
        if self._link_src.size == 0:
            return
        s, t = self._link_src, self._link_tgt
        d = (self._pos[t] + self._vel[t]) - (self._pos[s] + self._vel[s])
        length = np.hypot(d[:, 0], d[:, 1])
        length = np.where(length == 0, 1e-6, length)
        k = (length - self.settings.link_distance) / length * alpha * self.settings.link_strength
        d = d * k[:, None]
        bias = self._link_bias[:, None]
        np.add.at(self._vel, t, -d * bias)
        np.add.at(self._vel, s, d * (1 - bias))

    def _apply_charge(self, alpha: float) -> None:
        n = len(self.nodes)
        if n < 2:
            return
        delta = self._pairwise(self._pos)
        dist2 = (delta ** 2).sum(axis=-1)
        # Closer than 1px: soften like d3's distanceMin
        dist2 = np.where(dist2 < 1.0, np.sqrt(np.maximum(dist2, 1e-12)), dist2)
        np.fill_diagonal(dist2, np.inf)
        weight = self.settings.charge_strength * alpha / dist2
        self._vel += (delta * weight[:, :, None]).sum(axis=1)

    def _apply_collisions(self) -> None:
        n = len(self.nodes)
        if n < 2:
            return
        predicted = self._pos + self._vel
        away = -self._pairwise(predicted)  # away[i, j] = p_i - p_j
        dist = np.hypot(away[:, :, 0], away[:, :, 1])
        reach = self._radius[:, None] + self._radius[None, :]
        overlap = dist < reach
        np.fill_diagonal(overlap, False)
        if not overlap.any():
            return
        safe = np.where(dist == 0, 1e-6, dist)
        push = np.where(overlap, (reach - safe) / safe * self.settings.collide_strength, 0.0)
        r2 = self._radius ** 2
        share = r2[None, :] / np.maximum(r2[:, None] + r2[None, :], 1e-12)
        self._vel += (away * (push * share)[:, :, None]).sum(axis=1)

    def _apply_positioning(self, alpha: float) -> None:
        if not self._target_strength.any():
            return
        self._vel += (self._target - self._pos) * self._target_strength * alpha

    def _apply_center(self) -> None:
        if len(self.nodes) == 0:
            return
        shift = (self._pos.mean(axis=0) - np.array(self.center)) * self.settings.center_strength
        self._pos -= shift

    def tick(self, iterations: int = 1) -> None:
        for _ in range(iterations):
            self.alpha += (self.alpha_target - self.alpha) * ALPHA_DECAY
            self._apply_links(self.alpha)
            self._apply_charge(self.alpha)
            self._apply_collisions()
            self._apply_positioning(self.alpha)

            self._vel *= 1 - VELOCITY_DECAY
            self._pos += self._vel
            self._apply_center()

            if self._pinned.any():
                self._pos[self._pinned] = self._fixed[self._pinned]
                self._vel[self._pinned] = 0.0
        self._write_back()

    def run(self, max_ticks: int = 300) -> int:
        """Tick until the simulation cools down; returns the number of ticks taken."""
        ticks = 0
        while self.alpha >= ALPHA_MIN and ticks < max_ticks:
            self.tick()
            ticks += 1
        return ticks

    @property
    def is_settled(self) -> bool:
        return self.alpha < ALPHA_MIN

    def _write_back(self) -> None:
        for i, node in enumerate(self.nodes):
            node.layout.x, node.layout.y = float(self._pos[i, 0]), float(self._pos[i, 1])
            node.layout.vx, node.layout.vy = float(self._vel[i, 0]), float(self._vel[i, 1])
            node.layout.has_position = True

    # ------------------------------------------------------------------
    # Interaction
    # ------------------------------------------------------------------

    def pin(self, node_id: int, x: float, y: float) -> None:
        i = self._index[node_id]
        node = self.nodes[i]
        node.layout.pinned = (x, y)
        node.layout.x, node.layout.y = x, y
        self._pinned[i] = True
        self._fixed[i] = (x, y)
        self._pos[i] = (x, y)
        self._vel[i] = 0.0
        self.alpha = max(self.alpha, GENTLE_ALPHA)

    def unpin(self, node_id: int) -> None:
        i = self._index[node_id]
        self.nodes[i].layout.pinned = None
        self._pinned[i] = False

    def visible_nodes(self, viewport: Viewport, margin: float = VIEWPORT_MARGIN_PX) -> List[GraphNode]:
        return [n for n in self.nodes if viewport.contains(n.layout.x, n.layout.y, margin)]
