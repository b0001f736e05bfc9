"""
Barnes-Hut quadtree for 2D N-body force calculation.

The tree recursively splits the world box into four quadrants around each
node's own center. Every node keeps the running sums of its subtree (total
mass and mass-weighted coordinates) so that a distant subtree can stand in for
all of its bodies as a single point mass at its center of mass.

Nodes live in an arena (``QuadTree.nodes``) and refer to each other through
integer handles; ``NULL`` (-1) marks a missing child or the root's parent.
A node is in exactly one of three states:

- empty: no resident body and no children
- leaf: resident bodies and no children (a single body, except at the
  depth cap where any number of bodies share the leaf)
- internal: no resident body, one to four children

Child slots are ordered top-left, top-right, bottom-left, bottom-right, with
"top" meaning smaller y. Points on a split line go right/bottom.

Constants:
    ROOT: Handle of the root node
    NULL: Missing node handle
    DEFAULT_MAX_DEPTH: Depth cap used when none is given
    PARALLEL_MIN_BODIES: Below this many bodies the parallel build runs serially

Example:
    >>> from cosmos_bh.core.body import Body
    >>> from cosmos_bh.physics.quadtree import QuadTree
    >>> tree = QuadTree(1024.0, 1024.0)
    >>> tree.insert_batch([Body(id=0, x=-10.0, y=5.0, mass=2.0), Body(id=1, x=30.0, y=-8.0)])
    2
    >>> tree.total_mass
    3.0
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator

from cosmos_bh.core.body import NO_NODE, Body, InvalidBody
from cosmos_bh.physics.collisions import collides
from cosmos_bh.physics.forces import attraction_at

logger = logging.getLogger("cosmos_bh")

ROOT = 0
NULL = NO_NODE

TOP_LEFT = 0
TOP_RIGHT = 1
BOT_LEFT = 2
BOT_RIGHT = 3

DEFAULT_MAX_DEPTH = 100
PARALLEL_MIN_BODIES = 64

EMPTY = "empty"
LEAF = "leaf"
INTERNAL = "internal"


def _new_children() -> list[int]:
    return [NULL, NULL, NULL, NULL]


@dataclass(slots=True)
class BHNode:
    """
    A node of the Barnes-Hut quadtree.

    Attributes:
        cx, cy: Center of the node's box
        width, height: Full extent of the box
        depth: Distance from the root (root is 0)
        parent: Handle of the parent node, NULL for the root
        children: Four child handles, NULL where the quadrant is unused
        bodies: Resident bodies (leaf only)
        mass: Total mass of the subtree
        mx, my: Mass-weighted coordinate sums of the subtree
        x0, x1, y0, y1: Half-open box [x0, x1) x [y0, y1), inherited from
            the parent's split lines

    The center of mass is computed on read as (mx / mass, my / mass).
    """
    cx: float
    cy: float
    width: float
    height: float
    depth: int = 0
    parent: int = NULL
    children: list[int] = field(default_factory=_new_children)
    bodies: list[Body] = field(default_factory=list)

    mass: float = 0.0
    mx: float = 0.0
    my: float = 0.0

    x0: float = 0.0
    x1: float = 0.0
    y0: float = 0.0
    y1: float = 0.0

    @classmethod
    def box(cls, cx: float, cy: float, width: float, height: float) -> "BHNode":
        """A depth-0 node whose bounds are centered on (cx, cy)."""
        hw = width * 0.5
        hh = height * 0.5
        return cls(cx, cy, width, height, x0=cx - hw, x1=cx + hw, y0=cy - hh, y1=cy + hh)

    @property
    def has_children_nodes(self) -> bool:
        return any(c != NULL for c in self.children)

    @property
    def has_child_body(self) -> bool:
        return bool(self.bodies)

    @property
    def is_empty(self) -> bool:
        return not self.bodies and not self.has_children_nodes

    @property
    def state(self) -> str:
        if self.bodies:
            return LEAF
        if self.has_children_nodes:
            return INTERNAL
        return EMPTY

    @property
    def total_mass(self) -> float:
        return self.mass

    @property
    def cmx(self) -> float:
        if self.mass <= 0.0:
            return self.cx
        return self.mx / self.mass

    @property
    def cmy(self) -> float:
        if self.mass <= 0.0:
            return self.cy
        return self.my / self.mass

    def center_of_mass(self) -> tuple[float, float] | None:
        """Return the subtree centroid, or None for a massless node."""
        if self.mass <= 0.0:
            return None
        inv = 1.0 / self.mass
        return self.mx * inv, self.my * inv

    def fits(self, x: float, y: float) -> bool:
        """Strict containment: |cx - x| < width/2 and |cy - y| < height/2."""
        return abs(self.cx - x) < self.width * 0.5 and abs(self.cy - y) < self.height * 0.5

    def contains(self, x: float, y: float) -> bool:
        """Half-open containment matching quadrant(): x0 <= x < x1 and y0 <= y < y1."""
        return self.x0 <= x < self.x1 and self.y0 <= y < self.y1

    def quadrant(self, x: float, y: float) -> int:
        qx = 1 if x >= self.cx else 0
        qy = 1 if y >= self.cy else 0
        return qx | (qy << 1)

    def add_mass(self, m: float, x: float, y: float) -> None:
        self.mass += m
        self.mx += m * x
        self.my += m * y

    def sub_mass(self, m: float, x: float, y: float) -> None:
        self.mass -= m
        self.mx -= m * x
        self.my -= m * y

    def zero_mass(self) -> None:
        self.mass = 0.0
        self.mx = 0.0
        self.my = 0.0


@dataclass(frozen=True, slots=True)
class NodeView:
    """Read-only snapshot of a node, for drawing tree outlines."""
    handle: int
    cx: float
    cy: float
    width: float
    height: float
    depth: int
    cmx: float
    cmy: float
    total_mass: float
    state: str


@dataclass(frozen=True, slots=True)
class TreeStats:
    nodes: int
    leaves: int
    max_depth: int
    bodies: int


def default_workers() -> int:
    """Worker count for parallel phases: one less than the CPU count, at least one."""
    return max(1, (os.cpu_count() or 2) - 1)


class QuadTree:
    """
    Arena-backed Barnes-Hut quadtree.

    Structural mutation through the public methods is serialized by
    ``self.lock`` (re-entrant). Node allocation takes a separate lock so the
    four root quadrants can be built concurrently; each builder owns a
    disjoint subtree and writes only to its own nodes. Force walks only read.

    Args:
        width, height: Extent of the world box
        max_depth: Depth cap; nodes at this depth never subdivide
        cx, cy: Center of the world box
    """

    def __init__(
        self,
        width: float,
        height: float,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        cx: float = 0.0,
        cy: float = 0.0,
    ) -> None:
        width = float(width)
        height = float(height)
        if not (math.isfinite(width) and math.isfinite(height)) or width <= 0.0 or height <= 0.0:
            raise ValueError(f"tree extent must be finite and > 0, got {width} x {height}")
        if int(max_depth) < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        self.max_depth = int(max_depth)
        self.nodes: list[BHNode] = [BHNode.box(float(cx), float(cy), width, height)]
        self._free: list[int] = []
        self._alloc_lock = threading.Lock()
        self.lock = threading.RLock()
        self.last_build_time_ms: float | None = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def root(self) -> BHNode:
        return self.nodes[ROOT]

    @property
    def width(self) -> float:
        return self.root.width

    @property
    def height(self) -> float:
        return self.root.height

    @property
    def total_mass(self) -> float:
        return self.root.mass

    @property
    def center_of_mass(self) -> tuple[float, float] | None:
        return self.root.center_of_mass()

    def node(self, handle: int) -> BHNode:
        return self.nodes[handle]

    def fits(self, x: float, y: float, handle: int = ROOT) -> bool:
        return self.nodes[handle].fits(x, y)

    def contains(self, x: float, y: float, handle: int = ROOT) -> bool:
        """
        True when (x, y) belongs to node ``handle``.

        A point belongs to a node when the root strictly contains it and it
        lies in the node's half-open box, so points on a split line belong
        to the right/bottom side, where quadrant() routes them.
        """
        if not self.root.fits(x, y):
            return False
        return handle == ROOT or self.nodes[handle].contains(x, y)

    def quadrant(self, handle: int, x: float, y: float) -> int:
        return self.nodes[handle].quadrant(x, y)

    # ------------------------------------------------------------------
    # Arena
    # ------------------------------------------------------------------

    def _alloc(self, parent: int, q: int) -> int:
        p = self.nodes[parent]
        qw = p.width * 0.25
        qh = p.height * 0.25
        cx = p.cx + (qw if q & 1 else -qw)
        cy = p.cy + (qh if q & 2 else -qh)
        child = BHNode(
            cx, cy, p.width * 0.5, p.height * 0.5, p.depth + 1, parent,
            x0=p.cx if q & 1 else p.x0,
            x1=p.x1 if q & 1 else p.cx,
            y0=p.cy if q & 2 else p.y0,
            y1=p.y1 if q & 2 else p.cy,
        )
        with self._alloc_lock:
            if self._free:
                h = self._free.pop()
                self.nodes[h] = child
            else:
                h = len(self.nodes)
                self.nodes.append(child)
        p.children[q] = h
        return h

    def _child(self, h: int, q: int) -> int:
        c = self.nodes[h].children[q]
        if c == NULL:
            c = self._alloc(h, q)
        return c

    def _release(self, h: int) -> None:
        node = self.nodes[h]
        parent = self.nodes[node.parent]
        for q in range(4):
            if parent.children[q] == h:
                parent.children[q] = NULL
                break
        node.parent = NULL
        with self._alloc_lock:
            self._free.append(h)

    def _prune_children(self, h: int) -> None:
        node = self.nodes[h]
        for c in node.children:
            if c != NULL and self.nodes[c].is_empty:
                self._release(c)

    def _prune_upward(self, h: int, stop: int) -> None:
        # Release emptied nodes from h up to (not including) stop.
        while h != NULL and h != stop and h != ROOT:
            node = self.nodes[h]
            if not node.is_empty:
                break
            parent = node.parent
            self._release(h)
            h = parent

    def _settle(self, h: int) -> None:
        node = self.nodes[h]
        if node.is_empty:
            node.zero_mass()

    # ------------------------------------------------------------------
    # Single insertion
    # ------------------------------------------------------------------

    def insert(self, body: Body) -> bool:
        """
        Insert one body.

        Returns False, leaving the tree untouched, when the body lies outside
        the root box. Raises InvalidBody for malformed bodies and for bodies
        that still belong to a tree (remove them or clear that tree first).
        """
        self._check_free(body)
        with self.lock:
            if not self.root.fits(body.x, body.y):
                return False
            self._insert_at(ROOT, body, body.mass, body.x, body.y)
            self._prune_children(ROOT)
            return True

    def _insert_at(self, h: int, body: Body, m: float, ax: float, ay: float) -> None:
        # Routing uses the body's position; (m, ax, ay) is the contribution
        # recorded in the aggregates and in the body's anchor.
        node = self.nodes[h]
        node.add_mass(m, ax, ay)

        if node.depth >= self.max_depth:
            node.bodies.append(body)
            self._place(body, h, m, ax, ay)
            return

        if node.has_children_nodes:
            self._insert_at(self._child(h, node.quadrant(body.x, body.y)), body, m, ax, ay)
            return

        if node.bodies:
            resident = node.bodies.pop()
            self._insert_at(
                self._child(h, node.quadrant(resident.x, resident.y)),
                resident,
                resident.anchor_mass,
                resident.anchor_x,
                resident.anchor_y,
            )
            self._insert_at(self._child(h, node.quadrant(body.x, body.y)), body, m, ax, ay)
            return

        node.bodies.append(body)
        self._place(body, h, m, ax, ay)

    @staticmethod
    def _place(body: Body, h: int, m: float, ax: float, ay: float) -> None:
        body.node = h
        body.anchor_x = ax
        body.anchor_y = ay
        body.anchor_mass = m

    # ------------------------------------------------------------------
    # Batch construction
    # ------------------------------------------------------------------

    @staticmethod
    def _check_free(body: Body) -> None:
        body.validate()
        if body.node != NULL:
            raise InvalidBody(f"body {body.id} already belongs to tree node {body.node}")

    def _admit(self, bodies: Iterable[Body]) -> list[Body]:
        root = self.root
        items: list[Body] = []
        for body in bodies:
            self._check_free(body)
            if root.fits(body.x, body.y):
                items.append(body)
        return items

    def insert_batch(self, bodies: Iterable[Body]) -> int:
        """
        Build from a list of bodies with one partition pass per node.

        Bodies outside the root box are skipped; bodies already in a tree raise
        InvalidBody as in insert(). Returns the number of bodies
        added to the tree.
        """
        items = self._admit(bodies)
        with self.lock:
            t0 = time.perf_counter()
            self._build(ROOT, items)
            self.last_build_time_ms = (time.perf_counter() - t0) * 1000.0
        return len(items)

    def insert_batch_parallel(self, bodies: Iterable[Body], workers: int | None = None) -> int:
        """
        Like insert_batch, but the four root quadrants are built concurrently.

        The root partition runs in the calling thread; each quadrant subtree is
        then built by its own task on a thread pool of at most four workers.
        """
        items = self._admit(bodies)
        if workers is None or workers <= 0:
            workers = default_workers()
        workers = min(4, workers)
        with self.lock:
            t0 = time.perf_counter()
            if workers <= 1 or len(items) < PARALLEL_MIN_BODIES:
                self._build(ROOT, items)
            else:
                tasks = self._split(ROOT, items)
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bh-build") as executor:
                    futures = [executor.submit(self._build, child, sub) for child, sub in tasks]
                    for future in futures:
                        future.result()
            self.last_build_time_ms = (time.perf_counter() - t0) * 1000.0
        return len(items)

    def _build(self, h: int, items: list[Body]) -> None:
        for child, sub in self._split(h, items):
            self._build(child, sub)

    def _split(self, h: int, items: list[Body]) -> list[tuple[int, list[Body]]]:
        """
        Add ``items`` to node h and return the (child, sublist) pairs still to build.

        Aggregates are summed over the whole list in the same pass that
        partitions it.
        """
        if not items:
            return []
        node = self.nodes[h]

        if node.depth >= self.max_depth:
            for body in items:
                node.add_mass(body.mass, body.x, body.y)
                node.bodies.append(body)
                body.anchor(h)
            return []

        if len(items) == 1 and node.is_empty:
            body = items[0]
            node.add_mass(body.mass, body.x, body.y)
            node.bodies.append(body)
            body.anchor(h)
            return []

        resident = node.bodies.pop() if node.bodies else None

        parts: list[list[Body]] = [[], [], [], []]
        m_sum = mx_sum = my_sum = 0.0
        cx = node.cx
        cy = node.cy
        for body in items:
            q = (1 if body.x >= cx else 0) | (2 if body.y >= cy else 0)
            parts[q].append(body)
            m = body.mass
            m_sum += m
            mx_sum += m * body.x
            my_sum += m * body.y
        node.mass += m_sum
        node.mx += mx_sum
        node.my += my_sum

        if resident is not None:
            self._insert_at(
                self._child(h, node.quadrant(resident.x, resident.y)),
                resident,
                resident.anchor_mass,
                resident.anchor_x,
                resident.anchor_y,
            )

        tasks: list[tuple[int, list[Body]]] = []
        for q in range(4):
            if parts[q]:
                tasks.append((self._child(h, q), parts[q]))
        return tasks

    # ------------------------------------------------------------------
    # Relocation and removal
    # ------------------------------------------------------------------

    def _unlink(self, body: Body) -> int:
        h = body.node
        node = self.nodes[h]
        for i, resident in enumerate(node.bodies):
            if resident is body:
                del node.bodies[i]
                return h
        raise ValueError(f"body {body.id} is not resident in node {h}")

    def relocate(self, body: Body) -> bool:
        """
        Move a body that left its node's box to the node that now contains it.

        Walks up the parent chain taking the body's recorded contribution out
        of each aggregate until an ancestor contains the new position, prunes
        the emptied nodes and inserts from that ancestor. Returns False when
        even the root no longer contains the body; it is then detached.
        """
        with self.lock:
            if body.node == NULL:
                return False
            if self.contains(body.x, body.y, body.node):
                return True
            leaf = self._unlink(body)
            m, ax, ay = body.anchor_mass, body.anchor_x, body.anchor_y
            h = leaf
            while h != NULL:
                node = self.nodes[h]
                node.sub_mass(m, ax, ay)
                if self.contains(body.x, body.y, h):
                    break
                h = node.parent
            self._prune_upward(leaf, stop=h)
            body.detach()
            if h == NULL:
                self._settle(ROOT)
                return False
            self._settle(h)
            self._insert_at(h, body, body.mass, body.x, body.y)
            # Ancestors above h still hold the old contribution.
            p = self.nodes[h].parent
            while p != NULL:
                node = self.nodes[p]
                node.sub_mass(m, ax, ay)
                node.add_mass(body.mass, body.x, body.y)
                p = node.parent
            return True

    def remove(self, body: Body) -> bool:
        """Take a body out of the tree. Returns False if it was not in it."""
        with self.lock:
            if body.node == NULL:
                return False
            leaf = self._unlink(body)
            m, ax, ay = body.anchor_mass, body.anchor_x, body.anchor_y
            h = leaf
            while h != NULL:
                self.nodes[h].sub_mass(m, ax, ay)
                h = self.nodes[h].parent
            self._prune_upward(leaf, stop=NULL)
            self._settle(ROOT)
            body.detach()
            return True

    def repair(self, bodies: Iterable[Body]) -> int:
        """
        Incrementally bring the tree in line with the current body state.

        Flagged bodies are removed, detached bodies inserted, bodies that left
        their node relocated; aggregates are then recomputed from scratch.
        Returns the number of structural moves.
        """
        moves = 0
        with self.lock:
            for body in bodies:
                if body.marked_to_remove:
                    if self.remove(body):
                        moves += 1
                elif body.node == NULL:
                    if self.insert(body):
                        moves += 1
                elif not self.contains(body.x, body.y, body.node):
                    self.relocate(body)
                    moves += 1
            self.recompute_aggregates()
        return moves

    def recompute_aggregates(self) -> float:
        """Recompute every reachable node's sums from current body state."""
        with self.lock:
            return self._recompute(ROOT)

    def _recompute(self, h: int) -> float:
        node = self.nodes[h]
        node.zero_mass()
        if node.bodies:
            for body in node.bodies:
                node.add_mass(body.mass, body.x, body.y)
                body.anchor(h)
            return node.mass
        for c in node.children:
            if c != NULL:
                self._recompute(c)
                child = self.nodes[c]
                node.mass += child.mass
                node.mx += child.mx
                node.my += child.my
        return node.mass

    # ------------------------------------------------------------------
    # Clearing
    # ------------------------------------------------------------------

    def _detach_all(self) -> None:
        for h in self._reachable():
            for body in self.nodes[h].bodies:
                if body.node == h:
                    body.detach()

    def clear(self) -> None:
        """Empty the tree, keeping node storage for reuse by the next build."""
        with self.lock:
            self._detach_all()
            old = self.root
            self.nodes[ROOT] = BHNode.box(old.cx, old.cy, old.width, old.height)
            with self._alloc_lock:
                self._free = list(range(len(self.nodes) - 1, 0, -1))

    def reset(self) -> None:
        """Empty the tree and release all node storage but the root."""
        with self.lock:
            self._detach_all()
            old = self.root
            released = len(self.nodes) - 1
            self.nodes = [BHNode.box(old.cx, old.cy, old.width, old.height)]
            with self._alloc_lock:
                self._free = []
            logger.debug("quadtree reset: released %d nodes", released)

    # ------------------------------------------------------------------
    # Force walk
    # ------------------------------------------------------------------

    def calculate_force(
        self,
        body: Body,
        *,
        theta: float,
        g: float,
        softening: float = 0.0,
        multiplier: float = 1.0,
        on_collision: Callable[[Body, Body], object] | None = None,
    ) -> int:
        """
        Accumulate the tree's gravitational pull on ``body``.

        Resident bodies interact pairwise (or collide, when ``on_collision``
        is given). An internal node whose width w and distance r from its
        center to the body satisfy w² / r² < θ² acts as one point mass at its
        centroid. Returns the number of interactions evaluated.
        """
        if body.marked_to_remove:
            return 0
        theta2 = theta * theta
        eps2 = softening * softening
        bx = body.x
        by = body.y
        bm = body.mass
        fx = fy = 0.0
        interactions = 0
        nodes = self.nodes
        stack = [ROOT]
        while stack:
            node = nodes[stack.pop()]
            if node.bodies:
                for other in node.bodies:
                    if other is body or other.marked_to_remove:
                        continue
                    if on_collision is not None and collides(body, other):
                        on_collision(body, other)
                        if body.marked_to_remove:
                            return interactions
                        bm = body.mass
                        continue
                    dfx, dfy = attraction_at(bx, by, bm, other.x, other.y, other.mass, g, eps2)
                    fx += dfx
                    fy += dfy
                    interactions += 1
                continue
            if node.mass <= 0.0:
                continue
            dx = node.cx - bx
            dy = node.cy - by
            r2 = (dx * dx) + (dy * dy)
            if r2 > 0.0 and node.width * node.width < theta2 * r2:
                inv = 1.0 / node.mass
                dfx, dfy = attraction_at(bx, by, bm, node.mx * inv, node.my * inv, node.mass, g, eps2)
                fx += dfx
                fy += dfy
                interactions += 1
                continue
            for c in node.children:
                if c != NULL:
                    stack.append(c)
        body.apply_force(fx * multiplier, fy * multiplier)
        return interactions

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _reachable(self, h: int = ROOT) -> Iterator[int]:
        stack = [h]
        while stack:
            cur = stack.pop()
            yield cur
            for c in self.nodes[cur].children:
                if c != NULL:
                    stack.append(c)

    def iter_nodes(self) -> Iterator[NodeView]:
        for h in self._reachable():
            n = self.nodes[h]
            yield NodeView(h, n.cx, n.cy, n.width, n.height, n.depth, n.cmx, n.cmy, n.mass, n.state)

    def iter_bodies(self, h: int = ROOT) -> Iterator[Body]:
        for cur in self._reachable(h):
            yield from self.nodes[cur].bodies

    def stats(self) -> TreeStats:
        nodes = leaves = depth = bodies = 0
        for h in self._reachable():
            n = self.nodes[h]
            nodes += 1
            depth = max(depth, n.depth)
            if n.bodies:
                leaves += 1
                bodies += len(n.bodies)
        return TreeStats(nodes=nodes, leaves=leaves, max_depth=depth, bodies=bodies)

    def __len__(self) -> int:
        return sum(len(self.nodes[h].bodies) for h in self._reachable())
