"""Tests for the reference geometry kernel."""

import math

import numpy as np
import pytest
from numpy.testing import assert_allclose

from shapefield.config import RuntimeConfig
from shapefield.errors import InvalidArgumentError, InvalidOperandError, ResourceExhaustionError
from shapefield.kernel import Kernel, NodeHandle, Region
from shapefield.opcodes import Opcode


def _sphere(k: Kernel, radius: float = 1.0) -> NodeHandle:
    x, y, z = (k.build_variable(a) for a in "xyz")
    sq = [k.build_unary(Opcode.SQUARE, v) for v in (x, y, z)]
    total = k.build_binary(Opcode.ADD, k.build_binary(Opcode.ADD, sq[0], sq[1]), sq[2])
    return k.build_binary(Opcode.SUB, k.build_unary(Opcode.SQRT, total), k.build_constant(radius))


class TestConstruction:
    def test_constant_evaluates_everywhere(self, kernel):
        h = kernel.build_constant(2.5)
        assert_allclose(kernel.evaluate(h, [[0, 0, 0], [1, 2, 3]]), [2.5, 2.5])

    def test_variables_select_coordinates(self, kernel):
        pts = np.array([[1.0, 2.0, 3.0]])
        for axis, expected in zip("xyz", (1.0, 2.0, 3.0)):
            assert kernel.evaluate(kernel.build_variable(axis), pts)[0] == expected

    def test_unknown_variable(self, kernel):
        with pytest.raises(InvalidArgumentError):
            kernel.build_variable("w")

    def test_constant_rejects_non_numbers(self, kernel):
        with pytest.raises(InvalidOperandError):
            kernel.build_constant("abc")

    def test_wrong_arity_opcode(self, kernel):
        x = kernel.build_variable("x")
        with pytest.raises(InvalidArgumentError):
            kernel.build_unary(Opcode.ADD, x)
        with pytest.raises(InvalidArgumentError):
            kernel.build_binary(Opcode.SQRT, x, x)

    def test_invalid_operand(self, kernel):
        x = kernel.build_variable("x")
        kernel.release_tree(x)
        with pytest.raises(InvalidOperandError):
            kernel.build_unary(Opcode.NEG, x)
        with pytest.raises(InvalidOperandError):
            kernel.build_binary(Opcode.ADD, None, kernel.build_constant(1.0))

    def test_introspection(self, kernel):
        assert kernel.opcode_from_name("nth-root") is Opcode.NTH_ROOT
        assert kernel.opcode_from_name("bogus") is None
        assert kernel.opcode_arity(Opcode.VAR_X) == 0
        assert kernel.opcode_arity(Opcode.SIN) == 1
        assert kernel.opcode_arity(Opcode.ATAN2) == 2
        assert kernel.opcode_arity(999) is None


class TestReferenceCounting:
    def test_release_is_idempotent(self, kernel):
        h = kernel.build_constant(1.0)
        kernel.release_tree(h)
        kernel.release_tree(h)
        assert kernel.live_tree_count == 0
        assert kernel.live_node_count == 0

    def test_operands_kept_alive_by_parent(self, kernel):
        x = kernel.build_variable("x")
        one = kernel.build_constant(1.0)
        total = kernel.build_binary(Opcode.ADD, x, one)
        kernel.release_tree(x)
        kernel.release_tree(one)
        assert kernel.live_node_count == 3
        assert kernel.evaluate(total, [2.0, 0.0, 0.0])[0] == 3.0
        kernel.release_tree(total)
        assert kernel.live_node_count == 0

    def test_released_handle_never_aliases(self, kernel):
        a = kernel.build_constant(1.0)
        kernel.release_tree(a)
        b = kernel.build_constant(2.0)
        assert a != b
        assert not kernel.is_valid(a)
        assert kernel.is_valid(b)

    def test_duplicate_shares_node(self, kernel):
        a = kernel.build_variable("y")
        b = kernel.duplicate(a)
        assert kernel.tree_id(a) == kernel.tree_id(b)
        kernel.release_tree(a)
        assert kernel.is_valid(b)
        assert kernel.live_node_count == 1


class TestEquality:
    def test_same_operands_compare_equal(self, kernel):
        x = kernel.build_variable("x")
        one = kernel.build_constant(1.0)
        assert kernel.tree_eq(
            kernel.build_binary(Opcode.ADD, x, one), kernel.build_binary(Opcode.ADD, x, one)
        )

    def test_operand_order_matters(self, kernel):
        x = kernel.build_variable("x")
        one = kernel.build_constant(1.0)
        assert not kernel.tree_eq(
            kernel.build_binary(Opcode.ADD, x, one), kernel.build_binary(Opcode.ADD, one, x)
        )

    def test_constants_by_value(self, kernel):
        assert kernel.tree_eq(kernel.build_constant(3.0), kernel.build_constant(3.0))
        assert kernel.tree_eq(kernel.build_constant(math.nan), kernel.build_constant(math.nan))
        assert not kernel.tree_eq(kernel.build_constant(3.0), kernel.build_constant(4.0))


class TestRemap:
    def test_swaps_axes(self, kernel):
        x, y, z = (kernel.build_variable(a) for a in "xyz")
        diff = kernel.build_binary(Opcode.SUB, x, y)
        swapped = kernel.remap(diff, y, x, z)
        assert kernel.evaluate(swapped, [5.0, 2.0, 0.0])[0] == -3.0
        assert kernel.evaluate(diff, [5.0, 2.0, 0.0])[0] == 3.0

    def test_constant_subgraph_is_shared(self, kernel):
        c = kernel.build_constant(4.0)
        root = kernel.build_unary(Opcode.SQRT, c)
        x, y, z = (kernel.build_variable(a) for a in "xyz")
        remapped = kernel.remap(root, z, y, x)
        assert kernel.tree_id(remapped) == kernel.tree_id(root)


class TestGraph:
    def test_linearize_round_trip(self, kernel):
        h = _sphere(kernel)
        rebuilt = kernel.build_graph(kernel.linearize(h))
        pts = np.array([[0, 0, 0], [2, 0, 0], [0.3, -0.4, 0.1]])
        assert_allclose(kernel.evaluate(rebuilt, pts), kernel.evaluate(h, pts))

    def test_root_is_last(self, kernel):
        entries = kernel.linearize(_sphere(kernel))
        assert entries[-1][0] is Opcode.SUB

    def test_empty_graph(self, kernel):
        with pytest.raises(InvalidArgumentError):
            kernel.build_graph([])

    def test_forward_reference_rejected(self, kernel):
        with pytest.raises(InvalidArgumentError, match="out of order"):
            kernel.build_graph([(Opcode.NEG, 0.0, 1, None), (Opcode.VAR_X, 0.0, None, None)])

    def test_missing_operand_rejected(self, kernel):
        with pytest.raises(InvalidArgumentError):
            kernel.build_graph([(Opcode.VAR_X, 0.0, None, None), (Opcode.ADD, 0.0, 0, None)])

    def test_failed_build_leaks_nothing(self, kernel):
        with pytest.raises(InvalidArgumentError):
            kernel.build_graph([(Opcode.VAR_X, 0.0, None, None), (77, 0.0, 0, None)])
        assert kernel.live_node_count == 0


class TestEvaluate:
    def test_chunked_matches_single_pass(self):
        small = Kernel(config=RuntimeConfig(eval_chunk_size=7))
        big = Kernel()
        rng = np.random.default_rng(0)
        pts = rng.uniform(-2, 2, size=(100, 3))
        assert_allclose(small.evaluate(_sphere(small), pts), big.evaluate(_sphere(big), pts))

    def test_domain_errors_give_nan(self, kernel):
        h = kernel.build_unary(Opcode.SQRT, kernel.build_constant(-1.0))
        assert np.isnan(kernel.evaluate(h, [0.0, 0.0, 0.0])[0])

    def test_bad_point_shape(self, kernel):
        with pytest.raises(InvalidArgumentError):
            kernel.evaluate(kernel.build_constant(1.0), np.zeros((4, 2)))


class TestRegion:
    def test_from_center_size(self):
        r = Region.from_center_size((1.0, 0.0, 0.0), 2.0)
        assert r.intervals() == ((0.0, 2.0), (-1.0, 1.0), (-1.0, 1.0))

    def test_inverted_bounds(self):
        with pytest.raises(InvalidArgumentError):
            Region(1.0, 0.0, 0.0, 1.0, 0.0, 1.0)

    def test_non_finite_bounds(self):
        with pytest.raises(InvalidArgumentError):
            Region(0.0, math.inf, 0.0, 1.0, 0.0, 1.0)


class TestRenderMesh:
    def test_sphere_surface(self, kernel):
        mesh = kernel.render_mesh(_sphere(kernel), Region.from_center_size((0, 0, 0), 4.0), 0.25)
        assert mesh.tri_count > 0
        assert mesh.vertices.dtype == np.float32
        assert mesh.triangles.dtype == np.uint32
        assert mesh.triangles.shape[1] == 3
        radii = np.linalg.norm(mesh.vertices, axis=1)
        assert np.all(np.abs(radii - 1.0) < 0.05)
        assert kernel.live_mesh_count == 1
        kernel.release_mesh(mesh)
        kernel.release_mesh(mesh)
        assert kernel.live_mesh_count == 0
        assert mesh.vertices is None

    def test_no_sign_change_is_empty(self, kernel):
        mesh = kernel.render_mesh(_sphere(kernel), Region.from_center_size((5, 5, 5), 1.0), 0.25)
        assert mesh.tri_count == 0
        assert mesh.vert_count == 0

    def test_budget_exceeded(self):
        k = Kernel(config=RuntimeConfig(max_grid_samples=100))
        with pytest.raises(ResourceExhaustionError):
            k.render_mesh(_sphere(k), Region.from_center_size((0, 0, 0), 4.0), 0.1)
        assert k.live_mesh_count == 0

    @pytest.mark.parametrize("resolution", [0.0, -1.0, math.nan, "fine"])
    def test_bad_resolution(self, kernel, resolution):
        with pytest.raises(InvalidArgumentError):
            kernel.render_mesh(_sphere(kernel), Region.from_center_size((0, 0, 0), 4.0), resolution)

    def test_counts_calls(self, kernel):
        h = _sphere(kernel)
        before = kernel.stats["render_mesh"]
        kernel.release_mesh(kernel.render_mesh(h, Region.from_center_size((0, 0, 0), 3.0), 0.5))
        assert kernel.stats["render_mesh"] == before + 1
