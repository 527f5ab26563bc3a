"""Tests for shape nodes: structure rules, frames and cached evaluation."""

from __future__ import annotations

import warnings
from collections import Counter

import numpy as np
import pytest

from shapefield import scene
from shapefield.config import override_config
from shapefield.errors import InvalidArgumentError, PolicyError
from shapefield.kernel import Kernel
from shapefield.models import Transform
from shapefield.scene import Arity, NodeState, Operation, ShapeNode, resolve_params
from shapefield.warning_policy import ShapefieldWarning, WarningPolicy


@pytest.fixture
def body(kernel):
    """Union of a unit sphere and a box offset along +x."""
    root = ShapeNode("body", "union", kernel=kernel)
    ball = root.add_child(ShapeNode("ball", "sphere", {"radius": 1.0}, kernel=kernel))
    block = root.add_child(
        ShapeNode(
            "block", "box", {"lower": (1.5, -0.5, -0.5), "upper": (2.5, 0.5, 0.5)}, kernel=kernel
        )
    )
    return root, ball, block


class TestOperation:
    def test_arity(self):
        assert Operation.SPHERE.arity is Arity.NONARY
        assert Operation.SHELL.arity is Arity.UNARY
        assert Operation.BLEND.arity is Arity.NARY

    def test_from_label(self):
        assert Operation.from_label("difference") is Operation.DIFFERENCE

    def test_unknown_label(self):
        with pytest.raises(InvalidArgumentError, match="Unknown shape operation"):
            Operation.from_label("torus")


class TestParams:
    def test_defaults_filled(self):
        params = resolve_params(Operation.SPHERE, {"radius": 2})
        assert params == {"radius": 2.0, "center": (0.0, 0.0, 0.0)}

    def test_unknown_param(self):
        with pytest.raises(InvalidArgumentError, match="Unknown parameter 'size'"):
            resolve_params(Operation.SPHERE, {"size": 1.0})

    @pytest.mark.parametrize("value", [True, "big", float("nan")])
    def test_bad_scalar(self, value):
        with pytest.raises(InvalidArgumentError):
            resolve_params(Operation.SPHERE, {"radius": value})

    def test_bad_vector(self):
        with pytest.raises(InvalidArgumentError, match="3 finite numbers"):
            resolve_params(Operation.BOX, {"lower": (0, 0)})

    def test_bad_mirror_axis(self):
        with pytest.raises(InvalidArgumentError, match="mirror.axis"):
            resolve_params(Operation.MIRROR, {"axis": "w"})


class TestStructure:
    def test_primitive_rejects_children(self, kernel):
        ball = ShapeNode("ball", "sphere", kernel=kernel)
        with pytest.raises(InvalidArgumentError, match="primitive"):
            ball.add_child(ShapeNode("other", "box", kernel=kernel))

    def test_unary_single_child(self, kernel):
        hollow = ShapeNode("hollow", "shell", kernel=kernel)
        hollow.add_child(ShapeNode("a", "sphere", kernel=kernel))
        with pytest.raises(InvalidArgumentError, match="exactly one child"):
            hollow.add_child(ShapeNode("b", "sphere", kernel=kernel))

    def test_child_with_parent_rejected(self, body, kernel):
        _, ball, _ = body
        other = ShapeNode("other", "union", kernel=kernel)
        with pytest.raises(InvalidArgumentError, match="already has a parent"):
            other.add_child(ball)

    def test_cycle_rejected(self, kernel):
        a = ShapeNode("a", "union", kernel=kernel)
        b = a.add_child(ShapeNode("b", "union", kernel=kernel))
        with pytest.raises(InvalidArgumentError, match="cycle"):
            b.add_child(a)
        with pytest.raises(InvalidArgumentError, match="cycle"):
            a.add_child(a)

    def test_kernel_mismatch(self, kernel):
        a = ShapeNode("a", "union", kernel=kernel)
        with pytest.raises(InvalidArgumentError, match="different kernel"):
            a.add_child(ShapeNode("b", "sphere", kernel=Kernel()))

    def test_set_operation_checks_children(self, body):
        root, _, _ = body
        with pytest.raises(InvalidArgumentError):
            root.set_operation("sphere")
        root.set_operation("intersection")
        assert root.operation is Operation.INTERSECTION

    def test_remove_child(self, body):
        root, ball, block = body
        root.remove_child(ball)
        assert ball.parent is None
        assert root.children == (block,)
        with pytest.raises(InvalidArgumentError):
            root.remove_child(ball)

    def test_walk_and_find(self, body):
        root, ball, block = body
        assert [n.name for n in root.walk()] == ["body", "ball", "block"]
        assert root.find("block") is block
        assert root.find("missing") is None


class TestRenderSettings:
    def test_defaults_from_config(self, kernel):
        with override_config(default_resolution=0.5, default_splitting_angle=45.0):
            node = ShapeNode("ball", "sphere", kernel=kernel)
        assert node.resolution == 0.5
        assert node.splitting_angle == 45.0
        assert node.bounds_size == 2.5

    @pytest.mark.parametrize(
        "setting, value",
        [
            ("resolution", 0.0),
            ("resolution", -0.1),
            ("bounds_size", -1.0),
            ("bounds_size", float("nan")),
            ("splitting_angle", -1.0),
            ("splitting_angle", 181.0),
            ("resolution", "fine"),
        ],
    )
    def test_rejected_at_construction(self, kernel, setting, value):
        with pytest.raises(InvalidArgumentError, match=setting):
            ShapeNode("ball", "sphere", kernel=kernel, **{setting: value})

    def test_rejected_on_assignment(self, kernel):
        node = ShapeNode("ball", "sphere", resolution=0.25, kernel=kernel)
        with pytest.raises(InvalidArgumentError, match="resolution must be > 0"):
            node.resolution = 0
        assert node.resolution == 0.25
        node.splitting_angle = 0
        assert node.splitting_angle == 0.0


class TestFrames:
    def test_world_position_composes(self, kernel):
        root = ShapeNode("root", "union", transform=Transform(translation=(1, 0, 0)), kernel=kernel)
        child = root.add_child(
            ShapeNode("child", "sphere", transform=Transform(translation=(0, 2, 0)), kernel=kernel)
        )
        assert child.world_position() == (1.0, 2.0, 0.0)
        assert root.world_position() == (1.0, 0.0, 0.0)

    def test_fingerprint_tracks_ancestor_transform(self, body):
        root, ball, _ = body
        before = ball.fingerprint()
        root.transform = Transform(translation=(0, 0, 1))
        assert ball.fingerprint() != before

    def test_fingerprint_stable(self, body):
        root, _, _ = body
        assert root.fingerprint() == root.fingerprint()


class TestEvaluate:
    def test_primitive(self, kernel):
        ball = ShapeNode("ball", "sphere", kernel=kernel)
        tree = ball.evaluate()
        assert tree.value_at(0, 0, 0) == pytest.approx(-0.5)
        assert ball.state is NodeState.CLEAN
        assert ball.evaluation_count == 1

    def test_union_of_children(self, body):
        root, _, _ = body
        tree = root.evaluate()
        assert tree.value_at(0, 0, 0) == pytest.approx(-1.0)
        assert tree.value_at(2, 0, 0) == pytest.approx(-0.5)
        assert tree.value_at(0, 3, 0) > 0

    def test_clean_tree_is_reused(self, body, kernel):
        root, _, _ = body
        first = root.evaluate()
        stats = Counter(kernel.stats)
        assert root.evaluate() is first
        assert kernel.stats == stats

    def test_child_change_reevaluates_path_only(self, body):
        root, ball, block = body
        root.evaluate()
        ball.set_params(radius=0.25)
        tree = root.evaluate()
        assert tree.value_at(0, 0, 0) == pytest.approx(-0.25)
        assert ball.evaluation_count == 2
        assert block.evaluation_count == 1
        assert root.evaluation_count == 2

    def test_ancestor_transform_reevaluates_children(self, body):
        root, ball, block = body
        root.evaluate()
        root.transform = Transform(translation=(0, 0, 5))
        tree = root.evaluate()
        assert ball.evaluation_count == 2
        assert block.evaluation_count == 2
        assert tree.value_at(0, 0, 5) == pytest.approx(-1.0)

    def test_child_transform(self, kernel):
        root = ShapeNode("root", "union", kernel=kernel)
        root.add_child(
            ShapeNode("ball", "sphere", transform=Transform(translation=(0, 2, 0)), kernel=kernel)
        )
        assert root.evaluate().value_at(0, 2, 0) == pytest.approx(-0.5)

    def test_rotated_and_scaled_root(self, kernel):
        bar = ShapeNode(
            "bar",
            "box",
            {"lower": (-2, -0.25, -0.25), "upper": (2, 0.25, 0.25)},
            transform=Transform(rotation_degrees=(0, 0, 90), scale=0.5),
            kernel=kernel,
        )
        tree = bar.evaluate()
        assert tree.value_at(0, 0.9, 0) < 0
        assert tree.value_at(0.9, 0, 0) > 0

    def test_disabled_child_skipped(self, body):
        root, _, block = body
        root.evaluate()
        block.enabled = False
        tree = root.evaluate()
        assert tree.value_at(2, 0, 0) > 0

    def test_all_children_disabled(self, body, kernel):
        root, ball, block = body
        root.evaluate()
        ball.enabled = False
        block.enabled = False
        assert root.evaluate() is None
        assert root.tree is None

    def test_mirror(self, kernel):
        mirrored = ShapeNode("m", "mirror", {"axis": "x"}, kernel=kernel)
        mirrored.add_child(
            ShapeNode("s", "sphere", {"radius": 0.5, "center": (1, 0, 0)}, kernel=kernel)
        )
        tree = mirrored.evaluate()
        assert tree.value_at(-1, 0, 0) == pytest.approx(-0.5)
        assert tree.value_at(1, 0, 0) == pytest.approx(-0.5)

    def test_difference_order(self, kernel):
        cut = ShapeNode("cut", "difference", kernel=kernel)
        cut.add_child(ShapeNode("outer", "sphere", {"radius": 1.0}, kernel=kernel))
        cut.add_child(ShapeNode("inner", "sphere", {"radius": 0.5}, kernel=kernel))
        tree = cut.evaluate()
        assert tree.value_at(0, 0, 0) > 0
        assert tree.value_at(0.75, 0, 0) < 0

    def test_live_trees_match_nodes(self, body, kernel):
        root, _, _ = body
        root.evaluate()
        assert kernel.live_tree_count == 3
        root.evaluate()
        assert kernel.live_tree_count == 3

    def test_dispose(self, body, kernel):
        root, ball, _ = body
        root.evaluate()
        root.dispose()
        assert kernel.live_tree_count == 0
        assert root.tree is None
        assert ball.state is NodeState.DIRTY

    def test_invalidate_forces_rebuild(self, kernel):
        ball = ShapeNode("ball", "sphere", kernel=kernel)
        ball.evaluate()
        ball.invalidate()
        ball.evaluate()
        assert ball.evaluation_count == 2

    def test_results_match_direct_construction(self, body, kernel):
        from shapefield.csg import union
        from shapefield.shapes import box, sphere

        root, _, _ = body
        points = np.random.default_rng(3).uniform(-3, 3, size=(32, 3))
        expected = union(
            sphere(1.0, kernel=kernel), box((1.5, -0.5, -0.5), (2.5, 0.5, 0.5), kernel=kernel)
        ).eval(points)
        np.testing.assert_allclose(root.evaluate().eval(points), expected)


class TestFailedEvaluation:
    @pytest.fixture
    def failing_sphere(self, monkeypatch):
        def fail(params, kernel):
            raise InvalidArgumentError("radius rejected")

        def install():
            monkeypatch.setitem(scene._NONARY_BUILDERS, Operation.SPHERE, fail)

        return install

    def test_keeps_previous_tree(self, kernel, failing_sphere):
        ball = ShapeNode("ball", "sphere", kernel=kernel)
        previous = ball.evaluate()
        failing_sphere()
        ball.set_params(radius=0.75)
        with pytest.warns(ShapefieldWarning, match=r"\[W02\]"):
            tree = ball.evaluate()
        assert tree is previous
        assert tree.value_at(0, 0, 0) == pytest.approx(-0.5)
        assert isinstance(ball.last_error, InvalidArgumentError)
        assert ball.state is NodeState.CLEAN
        assert ball.evaluation_count == 1

    def test_not_retried_until_changed(self, kernel, failing_sphere):
        ball = ShapeNode("ball", "sphere", kernel=kernel)
        ball.evaluate()
        failing_sphere()
        ball.set_params(radius=0.75)
        with pytest.warns(ShapefieldWarning):
            ball.evaluate()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            ball.evaluate()

    def test_recovers_after_fix(self, kernel, failing_sphere, monkeypatch):
        ball = ShapeNode("ball", "sphere", kernel=kernel)
        ball.evaluate()
        failing_sphere()
        ball.set_params(radius=0.75)
        with pytest.warns(ShapefieldWarning):
            ball.evaluate()
        monkeypatch.undo()
        ball.set_params(radius=1.0)
        assert ball.evaluate().value_at(0, 0, 0) == pytest.approx(-1.0)
        assert ball.last_error is None

    def test_policy_escalates(self, kernel, failing_sphere):
        ball = ShapeNode("ball", "sphere", kernel=kernel)
        failing_sphere()
        policy = WarningPolicy(warn_as_error=frozenset({"W02"}))
        with override_config(warning_policy=policy):
            with pytest.raises(PolicyError, match="W02"):
                ball.evaluate()

    def test_failure_leaks_no_trees(self, kernel, failing_sphere):
        ball = ShapeNode("ball", "sphere", kernel=kernel)
        ball.evaluate()
        failing_sphere()
        ball.set_params(radius=0.75)
        with pytest.warns(ShapefieldWarning):
            ball.evaluate()
        assert kernel.live_tree_count == 1
