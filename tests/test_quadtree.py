"""Tests for the Barnes-Hut quadtree implementation."""

import math
import random
import unittest

from cosmos_bh.core.body import NO_NODE, Body, InvalidBody
from cosmos_bh.physics.collisions import CollisionResolver
from cosmos_bh.physics.forces import attraction_at, compute_forces_direct
from cosmos_bh.physics.quadtree import (
    BOT_LEFT,
    BOT_RIGHT,
    EMPTY,
    INTERNAL,
    LEAF,
    NULL,
    ROOT,
    TOP_LEFT,
    TOP_RIGHT,
    QuadTree,
)


def random_bodies(n: int, seed: int = 7, spread: float = 400.0) -> list[Body]:
    rng = random.Random(seed)
    return [
        Body(id=i, x=rng.uniform(-spread, spread), y=rng.uniform(-spread, spread), mass=rng.uniform(1.0, 10.0))
        for i in range(n)
    ]


def copies(bodies: list[Body]) -> list[Body]:
    return [Body(id=b.id, x=b.x, y=b.y, mass=b.mass) for b in bodies]


def signature(tree: QuadTree) -> list[tuple]:
    return sorted(
        (v.cx, v.cy, v.width, v.height, v.depth, v.state)
        for v in tree.iter_nodes()
    )


class TestQuadTreeConstruction(unittest.TestCase):
    """Tests for insertion and tree shape."""

    def test_insert_single_body(self) -> None:
        """A single body should be stored in the root as a leaf."""
        tree = QuadTree(1024.0, 1024.0)
        body = Body(id=0, x=10.0, y=-20.0, mass=3.0)

        self.assertTrue(tree.insert(body))
        self.assertEqual(tree.root.state, LEAF)
        self.assertEqual(body.node, ROOT)
        self.assertEqual(tree.total_mass, 3.0)
        self.assertEqual(tree.center_of_mass, (10.0, -20.0))

    def test_insert_outside_is_noop(self) -> None:
        """Bodies outside the root box are refused and leave the tree untouched."""
        tree = QuadTree(100.0, 100.0)
        body = Body(id=0, x=50.0, y=0.0)

        self.assertFalse(tree.insert(body))
        self.assertEqual(len(tree), 0)
        self.assertEqual(tree.total_mass, 0.0)
        self.assertEqual(body.node, NO_NODE)
        self.assertEqual(tree.root.state, EMPTY)

    def test_quadrant_order(self) -> None:
        """Children are ordered top-left, top-right, bottom-left, bottom-right."""
        tree = QuadTree(100.0, 100.0)
        bodies = [
            Body(id=0, x=-10.0, y=-10.0),
            Body(id=1, x=10.0, y=-10.0),
            Body(id=2, x=-10.0, y=10.0),
            Body(id=3, x=10.0, y=10.0),
        ]
        tree.insert_batch(bodies)

        root = tree.root
        self.assertEqual(root.state, INTERNAL)
        for q, body in zip((TOP_LEFT, TOP_RIGHT, BOT_LEFT, BOT_RIGHT), bodies):
            child = root.children[q]
            self.assertNotEqual(child, NULL)
            self.assertEqual(body.node, child)
            self.assertEqual(tree.node(child).bodies, [body])

    def test_split_line_goes_right_and_down(self) -> None:
        tree = QuadTree(100.0, 100.0)
        self.assertEqual(tree.quadrant(ROOT, 0.0, 0.0), BOT_RIGHT)
        self.assertEqual(tree.quadrant(ROOT, -1.0, 0.0), BOT_LEFT)
        self.assertEqual(tree.quadrant(ROOT, 0.0, -1.0), TOP_RIGHT)

    def test_fits_is_strict(self) -> None:
        tree = QuadTree(100.0, 100.0)
        self.assertTrue(tree.fits(49.999, -49.999))
        self.assertFalse(tree.fits(50.0, 0.0))
        self.assertFalse(tree.fits(0.0, -50.0))

    def test_batch_and_single_insert_agree(self) -> None:
        bodies = random_bodies(200)
        single = QuadTree(1024.0, 1024.0)
        for body in bodies:
            single.insert(body)
        single_sig = signature(single)

        batch = QuadTree(1024.0, 1024.0)
        batch.insert_batch(copies(bodies))

        self.assertEqual(signature(batch), single_sig)

    def test_internal_nodes_hold_no_bodies(self) -> None:
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(random_bodies(300))

        for view in tree.iter_nodes():
            node = tree.node(view.handle)
            if view.state == INTERNAL:
                self.assertEqual(node.bodies, [])
            elif view.state == LEAF:
                self.assertFalse(node.has_children_nodes)
                self.assertEqual(len(node.bodies), 1)

    def test_depth_cap_keeps_coincident_bodies(self) -> None:
        """10,000 coincident bodies end up together in one leaf at the cap."""
        tree = QuadTree(1024.0, 1024.0, max_depth=10)
        bodies = [Body(id=i, x=5.0, y=5.0) for i in range(10_000)]

        self.assertEqual(tree.insert_batch(bodies), 10_000)

        stats = tree.stats()
        self.assertEqual(stats.leaves, 1)
        self.assertEqual(stats.bodies, 10_000)
        self.assertEqual(stats.max_depth, 10)
        leaf = tree.node(bodies[0].node)
        self.assertEqual(leaf.depth, 10)
        self.assertEqual(len(leaf.bodies), 10_000)
        self.assertAlmostEqual(tree.total_mass, 10_000.0, places=6)

    def test_depth_cap_single_inserts(self) -> None:
        tree = QuadTree(1024.0, 1024.0, max_depth=6)
        bodies = [Body(id=i, x=-3.0, y=7.0, mass=2.0) for i in range(50)]
        for body in bodies:
            self.assertTrue(tree.insert(body))

        self.assertEqual(tree.stats().leaves, 1)
        self.assertEqual(len({b.node for b in bodies}), 1)
        self.assertEqual(tree.node(bodies[0].node).depth, 6)
        self.assertAlmostEqual(tree.total_mass, 100.0)

    def test_invalid_body_rejected(self) -> None:
        tree = QuadTree(100.0, 100.0)
        body = Body(id=0, x=1.0, y=1.0)
        body.mass = -1.0

        with self.assertRaises(InvalidBody):
            tree.insert(body)
        with self.assertRaises(InvalidBody):
            tree.insert_batch([body])

    def test_invalid_extent(self) -> None:
        with self.assertRaises(ValueError):
            QuadTree(0.0, 10.0)
        with self.assertRaises(ValueError):
            QuadTree(10.0, float("inf"))


class TestQuadTreeAggregates(unittest.TestCase):
    """Mass conservation and center of mass."""

    def assert_consistent(self, tree: QuadTree) -> None:
        for view in tree.iter_nodes():
            node = tree.node(view.handle)
            if node.bodies:
                expected = math.fsum(b.mass for b in node.bodies)
            else:
                expected = math.fsum(tree.node(c).mass for c in node.children if c != NULL)
            self.assertAlmostEqual(node.mass, expected, delta=1e-9 * max(1.0, expected))

    def test_mass_conservation(self) -> None:
        bodies = random_bodies(500)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)

        total = math.fsum(b.mass for b in bodies)
        self.assertAlmostEqual(tree.total_mass, total, delta=1e-9 * total)
        self.assert_consistent(tree)

    def test_centroid(self) -> None:
        bodies = random_bodies(500)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)

        total = math.fsum(b.mass for b in bodies)
        cx = math.fsum(b.mass * b.x for b in bodies) / total
        cy = math.fsum(b.mass * b.y for b in bodies) / total
        got = tree.center_of_mass
        self.assertIsNotNone(got)
        self.assertAlmostEqual(got[0], cx, places=6)
        self.assertAlmostEqual(got[1], cy, places=6)

    def test_massless_node_falls_back_to_center(self) -> None:
        tree = QuadTree(100.0, 100.0, cx=5.0, cy=-5.0)
        self.assertIsNone(tree.center_of_mass)
        self.assertEqual((tree.root.cmx, tree.root.cmy), (5.0, -5.0))

    def test_containment(self) -> None:
        bodies = random_bodies(400, seed=3)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)

        for body in bodies:
            node = tree.node(body.node)
            self.assertIn(body, node.bodies)
            self.assertTrue(tree.contains(body.x, body.y, body.node))

    def test_idempotent_rebuild(self) -> None:
        bodies = random_bodies(300)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)
        first = signature(tree)
        mass = tree.total_mass

        tree.clear()
        tree.insert_batch(bodies)
        self.assertEqual(signature(tree), first)
        self.assertEqual(tree.total_mass, mass)

        tree.reset()
        tree.insert_batch(bodies)
        self.assertEqual(signature(tree), first)

    def test_parallel_build_matches_serial(self) -> None:
        bodies = random_bodies(1000, seed=11)
        serial = QuadTree(1024.0, 1024.0)
        serial.insert_batch(bodies)
        serial_sig = signature(serial)
        serial_mass = serial.total_mass
        serial_cm = serial.center_of_mass
        serial_stats = serial.stats()
        serial.clear()

        parallel = QuadTree(1024.0, 1024.0)
        self.assertEqual(parallel.insert_batch_parallel(bodies, workers=4), 1000)

        self.assertEqual(signature(parallel), serial_sig)
        self.assertAlmostEqual(parallel.total_mass, serial_mass, places=9)
        self.assertAlmostEqual(parallel.center_of_mass[0], serial_cm[0], places=9)
        self.assertAlmostEqual(parallel.center_of_mass[1], serial_cm[1], places=9)
        self.assertEqual(parallel.stats(), serial_stats)
        for body in bodies:
            self.assertIn(body, parallel.node(body.node).bodies)
        self.assertIsNotNone(parallel.last_build_time_ms)

    def test_insert_batch_skips_outside(self) -> None:
        tree = QuadTree(100.0, 100.0)
        inside = Body(id=0, x=1.0, y=1.0)
        outside = Body(id=1, x=80.0, y=1.0)

        self.assertEqual(tree.insert_batch([inside, outside]), 1)
        self.assertEqual(outside.node, NO_NODE)
        self.assertEqual(len(tree), 1)


class TestQuadTreeMaintenance(unittest.TestCase):
    """Relocation, removal, repair and clearing."""

    def test_relocate_keeps_aggregates_exact(self) -> None:
        bodies = random_bodies(200, seed=5)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)

        mover = bodies[17]
        # Jump to the opposite root quadrant so the body must leave its leaf.
        mover.x = -300.0 if mover.x > 0.0 else 300.0
        mover.y = -250.0 if mover.y > 0.0 else 250.0
        self.assertTrue(tree.relocate(mover))

        node = tree.node(mover.node)
        self.assertIn(mover, node.bodies)
        self.assertTrue(tree.contains(mover.x, mover.y, mover.node))

        fresh = QuadTree(1024.0, 1024.0)
        fresh.insert_batch(copies(bodies))
        self.assertAlmostEqual(tree.total_mass, fresh.total_mass, places=6)
        self.assertAlmostEqual(tree.center_of_mass[0], fresh.center_of_mass[0], places=6)
        self.assertAlmostEqual(tree.center_of_mass[1], fresh.center_of_mass[1], places=6)
        self.assertEqual(len(tree), len(bodies))

    def test_relocate_outside_detaches(self) -> None:
        bodies = random_bodies(50)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)
        total = tree.total_mass

        leaver = bodies[0]
        leaver.x = 5000.0
        self.assertFalse(tree.relocate(leaver))
        self.assertEqual(leaver.node, NO_NODE)
        self.assertEqual(len(tree), 49)
        self.assertAlmostEqual(tree.total_mass, total - leaver.mass, places=6)

    def test_relocate_within_box_is_noop(self) -> None:
        tree = QuadTree(1024.0, 1024.0)
        body = Body(id=0, x=1.0, y=1.0)
        tree.insert(body)
        body.x = 2.0

        self.assertTrue(tree.relocate(body))
        self.assertEqual(body.node, ROOT)

    def test_remove(self) -> None:
        bodies = random_bodies(100)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)

        victim = bodies[42]
        total = tree.total_mass
        self.assertTrue(tree.remove(victim))
        self.assertFalse(tree.remove(victim))
        self.assertEqual(victim.node, NO_NODE)
        self.assertAlmostEqual(tree.total_mass, total - victim.mass, places=6)
        self.assertNotIn(victim, list(tree.iter_bodies()))

        for body in bodies:
            tree.remove(body)
        self.assertEqual(tree.total_mass, 0.0)
        self.assertEqual(tree.root.state, EMPTY)
        self.assertEqual(tree.stats().nodes, 1)

    def test_repair_matches_fresh_build(self) -> None:
        bodies = random_bodies(300, seed=21)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)

        rng = random.Random(99)
        for body in bodies:
            body.x += rng.uniform(-60.0, 60.0)
            body.y += rng.uniform(-60.0, 60.0)
        for body in bodies[:10]:
            body.mark_to_remove()
        newcomer = Body(id=1000, x=12.5, y=-40.0, mass=4.0)

        moves = tree.repair(bodies + [newcomer])
        self.assertGreater(moves, 0)

        live = [b for b in bodies if not b.marked_to_remove] + [newcomer]
        for body in live:
            self.assertIn(body, tree.node(body.node).bodies)
            self.assertTrue(tree.contains(body.x, body.y, body.node))
        self.assertTrue(all(b.node == NO_NODE for b in bodies[:10]))

        fresh = QuadTree(1024.0, 1024.0)
        fresh.insert_batch(copies(live))

        self.assertEqual(len(tree), len(live))
        self.assertEqual(set(map(id, tree.iter_bodies())), set(map(id, live)))
        self.assertAlmostEqual(tree.total_mass, fresh.total_mass, places=6)
        self.assertAlmostEqual(tree.center_of_mass[0], fresh.center_of_mass[0], places=6)
        self.assertAlmostEqual(tree.center_of_mass[1], fresh.center_of_mass[1], places=6)

    def test_split_line_bodies_stay_put(self) -> None:
        """Bodies on a split line belong to the right/bottom node that holds them."""
        tree = QuadTree(1024.0, 1024.0)
        on_lines = [
            Body(id=0, x=0.0, y=0.0, mass=50.0),
            Body(id=1, x=-100.0, y=-100.0),
            Body(id=2, x=256.0, y=-300.0),
            Body(id=3, x=-128.0, y=128.0),
        ]
        tree.insert_batch(on_lines)

        for body in on_lines:
            self.assertTrue(tree.contains(body.x, body.y, body.node))
        centre = tree.node(on_lines[0].node)
        self.assertEqual((centre.x0, centre.y0), (0.0, 0.0))
        self.assertFalse(centre.fits(0.0, 0.0))
        self.assertTrue(centre.contains(0.0, 0.0))
        self.assertFalse(centre.contains(-1e-9, 0.0))

        self.assertEqual(tree.repair(on_lines), 0)
        self.assertTrue(tree.relocate(on_lines[0]))
        self.assertIs(tree.node(on_lines[0].node), centre)

    def test_contains_respects_root_edges(self) -> None:
        tree = QuadTree(100.0, 100.0)
        body = Body(id=0, x=-30.0, y=-30.0)
        tree.insert_batch([body, Body(id=1, x=30.0, y=30.0)])

        self.assertTrue(tree.contains(-50.0 + 1e-9, -30.0, body.node))
        self.assertFalse(tree.contains(-50.0, -30.0, body.node))
        self.assertFalse(tree.contains(50.0, 0.0))

    def test_resident_body_cannot_join_another_tree(self) -> None:
        bodies = random_bodies(30)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)
        other = QuadTree(1024.0, 1024.0)

        with self.assertRaises(InvalidBody):
            other.insert(bodies[0])
        with self.assertRaises(InvalidBody):
            other.insert_batch(bodies)
        with self.assertRaises(InvalidBody):
            other.insert_batch_parallel(bodies, workers=4)
        self.assertEqual(len(other), 0)
        # The first tree still owns and can maintain every body.
        self.assertTrue(tree.remove(bodies[0]))
        self.assertEqual(len(tree), 29)

        self.assertTrue(other.insert(bodies[0]))
        tree.clear()
        self.assertEqual(other.insert_batch(bodies[1:]), 29)
        self.assertEqual(len(other), 30)

    def test_recompute_aggregates_picks_up_mass_changes(self) -> None:
        bodies = random_bodies(20)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)

        bodies[0].mass += 100.0
        total = tree.recompute_aggregates()
        self.assertAlmostEqual(total, math.fsum(b.mass for b in bodies), places=6)

    def test_clear_keeps_storage_reset_releases_it(self) -> None:
        bodies = random_bodies(100)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)
        allocated = len(tree.nodes)
        self.assertGreater(allocated, 1)

        tree.clear()
        self.assertEqual(len(tree.nodes), allocated)
        self.assertEqual(tree.stats().nodes, 1)
        self.assertEqual(tree.total_mass, 0.0)
        self.assertTrue(all(b.node == NO_NODE for b in bodies))

        tree.insert_batch(bodies)
        self.assertLessEqual(len(tree.nodes), allocated)

        tree.reset()
        self.assertEqual(len(tree.nodes), 1)
        self.assertEqual(len(tree), 0)


class TestQuadTreeForces(unittest.TestCase):
    """Tree walk against direct summation."""

    def walk_forces(self, bodies: list[Body], theta: float, g: float = 1.0) -> list[tuple[float, float]]:
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)
        for body in bodies:
            body.reset_force()
            tree.calculate_force(body, theta=theta, g=g)
        out = [(b.fx, b.fy) for b in bodies]
        for body in bodies:
            body.reset_force()
        return out

    def mean_error(self, bodies: list[Body], theta: float) -> float:
        exact = compute_forces_direct(
            [b.x for b in bodies], [b.y for b in bodies], [b.mass for b in bodies], 1.0,
        )
        approx = self.walk_forces(bodies, theta)
        errors = []
        for (fx, fy), (ex, ey) in zip(approx, exact):
            norm = math.hypot(ex, ey)
            errors.append(math.hypot(fx - ex, fy - ey) / norm)
        return sum(errors) / len(errors)

    def test_two_body_symmetry(self) -> None:
        a = Body(id=0, x=-10.0, y=0.0, mass=2.0)
        b = Body(id=1, x=10.0, y=0.0, mass=3.0)
        (fax, fay), (fbx, fby) = self.walk_forces([a, b], theta=0.95, g=2.0)

        expected = 2.0 * 2.0 * 3.0 / 400.0
        self.assertAlmostEqual(fax, expected)
        self.assertAlmostEqual(fbx, -expected)
        self.assertAlmostEqual(fay, 0.0)
        self.assertAlmostEqual(fby, 0.0)

    def test_single_body_feels_nothing(self) -> None:
        tree = QuadTree(100.0, 100.0)
        body = Body(id=0, x=1.0, y=2.0)
        tree.insert(body)

        self.assertEqual(tree.calculate_force(body, theta=0.5, g=1.0), 0)
        self.assertEqual((body.fx, body.fy), (0.0, 0.0))

    def test_theta_zero_matches_direct(self) -> None:
        bodies = random_bodies(50, seed=13)
        self.assertLess(self.mean_error(bodies, 0.0), 1e-9)

    def test_error_grows_with_theta(self) -> None:
        bodies = random_bodies(50, seed=13)
        e0 = self.mean_error(bodies, 0.0)
        e_mid = self.mean_error(bodies, 0.5)
        e_big = self.mean_error(bodies, 2.0)

        self.assertLessEqual(e0, e_mid)
        self.assertLessEqual(e_mid, e_big)
        self.assertLess(e_mid, 0.1)

    def test_acceptance_uses_point_mass_at_centroid(self) -> None:
        tree = QuadTree(1000.0, 1000.0)
        target = Body(id=0, x=-400.0, y=-400.0, mass=1.0)
        far = [Body(id=1, x=300.0, y=300.0, mass=2.0), Body(id=2, x=310.0, y=310.0, mass=6.0)]
        tree.insert_batch([target] + far)

        self.assertEqual(tree.calculate_force(target, theta=0.0, g=1.0), 2)
        target.reset_force()

        self.assertEqual(tree.calculate_force(target, theta=0.6, g=1.0), 1)
        cx = (2.0 * 300.0 + 6.0 * 310.0) / 8.0
        fx, fy = attraction_at(target.x, target.y, 1.0, cx, cx, 8.0, 1.0, 0.0)
        self.assertAlmostEqual(target.fx, fx)
        self.assertAlmostEqual(target.fy, fy)

    def test_multiplier_scales_force(self) -> None:
        tree = QuadTree(100.0, 100.0)
        a = Body(id=0, x=-5.0, y=0.0)
        b = Body(id=1, x=5.0, y=0.0)
        tree.insert_batch([a, b])

        tree.calculate_force(a, theta=0.5, g=1.0, multiplier=3.0)
        self.assertAlmostEqual(a.fx, 3.0 / 100.0)

    def test_flagged_bodies_are_ignored(self) -> None:
        tree = QuadTree(100.0, 100.0)
        a = Body(id=0, x=-5.0, y=0.0)
        b = Body(id=1, x=5.0, y=0.0)
        tree.insert_batch([a, b])
        b.mark_to_remove()

        self.assertEqual(tree.calculate_force(a, theta=0.0, g=1.0), 0)
        self.assertEqual(a.fx, 0.0)
        self.assertEqual(tree.calculate_force(b, theta=0.0, g=1.0), 0)

    def test_collision_during_walk(self) -> None:
        tree = QuadTree(100.0, 100.0)
        a = Body(id=0, x=1.0, y=1.0, mass=10.0, radius=5.0)
        b = Body(id=1, x=3.0, y=1.0, mass=5.0, radius=5.0)
        tree.insert_batch([a, b])
        resolver = CollisionResolver()

        tree.calculate_force(a, theta=0.5, g=1.0, on_collision=resolver)

        self.assertTrue(b.marked_to_remove)
        self.assertFalse(a.marked_to_remove)
        self.assertEqual(a.mass, 15.0)
        self.assertEqual(resolver.merges, 1)
        self.assertEqual((a.fx, a.fy), (0.0, 0.0))


class TestQuadTreeViews(unittest.TestCase):

    def test_iter_nodes_and_stats(self) -> None:
        bodies = random_bodies(64)
        tree = QuadTree(1024.0, 1024.0)
        tree.insert_batch(bodies)

        views = list(tree.iter_nodes())
        stats = tree.stats()
        self.assertEqual(len(views), stats.nodes)
        self.assertEqual(sum(1 for v in views if v.state == LEAF), stats.leaves)
        self.assertEqual(stats.bodies, 64)
        self.assertEqual(len(tree), 64)
        self.assertEqual(views[0].handle, ROOT)
        self.assertAlmostEqual(views[0].total_mass, tree.total_mass)
        self.assertNotIn(EMPTY, {v.state for v in views})


if __name__ == "__main__":
    unittest.main()
