"""Tests for the dependency graph."""
import pytest

from riceify.engine import CycleError, DependencyEdge, DependencyGraph, ValidationError


class TestTopologicalOrder:
    """Tests for DependencyGraph.topological_order()."""

    def test_no_edges_is_lexicographic(self):
        """Unrelated files come out sorted by path."""
        graph = DependencyGraph(nodes=["/c", "/a", "/b"])

        assert graph.topological_order() == ["/a", "/b", "/c"]

    def test_dependency_before_dependent(self):
        """Every edge's source precedes its target."""
        graph = DependencyGraph(nodes=["/a", "/b", "/c"])
        graph.add_edge("/c", "/a")

        order = graph.topological_order()

        assert order.index("/c") < order.index("/a")

    def test_order_is_deterministic(self):
        """The same graph always gives the same order."""
        edges = [DependencyEdge("/tmpl", "/out"), DependencyEdge("/base", "/tmpl")]
        nodes = ["/z", "/out", "/tmpl", "/base", "/a"]

        first = DependencyGraph(nodes=nodes, edges=edges).topological_order()
        second = DependencyGraph(nodes=list(reversed(nodes)), edges=list(reversed(edges))).topological_order()

        assert first == second
        assert first == ["/a", "/base", "/tmpl", "/out", "/z"]

    def test_edges_add_nodes(self):
        """An edge implicitly declares both endpoints."""
        graph = DependencyGraph()
        graph.add_edge("/a", "/b")

        assert "/a" in graph
        assert len(graph) == 2


class TestCycles:
    """Tests for cycle detection."""

    def test_two_node_cycle(self):
        """A -> B -> A is rejected and named."""
        graph = DependencyGraph(edges=[DependencyEdge("/a", "/b"), DependencyEdge("/b", "/a")])

        with pytest.raises(CycleError) as exc:
            graph.validate()

        cycle = exc.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"/a", "/b"}

    def test_self_dependency(self):
        """A file that depends on itself is a cycle."""
        graph = DependencyGraph()
        graph.add_edge("/a", "/a")

        with pytest.raises(CycleError):
            graph.topological_order()

    def test_cycle_is_validation_error(self):
        """Callers catching ValidationError also catch cycles."""
        graph = DependencyGraph(edges=[
            DependencyEdge("/a", "/b"),
            DependencyEdge("/b", "/c"),
            DependencyEdge("/c", "/a"),
        ])

        with pytest.raises(ValidationError) as exc:
            graph.layers()

        assert "Dependency cycle" in str(exc.value)

    def test_cycle_message_follows_edges(self):
        """The reported cycle lists files in materialization order."""
        graph = DependencyGraph(edges=[
            DependencyEdge("/a", "/b"),
            DependencyEdge("/b", "/c"),
            DependencyEdge("/c", "/a"),
        ])

        with pytest.raises(CycleError) as exc:
            graph.validate()

        cycle = exc.value.cycle
        for src, dst in zip(cycle, cycle[1:]):
            assert DependencyEdge(src, dst) in graph.edges()


class TestLayers:
    """Tests for DependencyGraph.layers()."""

    def test_independent_files_share_a_layer(self):
        """No edges means a single layer."""
        graph = DependencyGraph(nodes=["/b", "/a"])

        assert graph.layers() == [["/a", "/b"]]

    def test_layer_is_longest_path_depth(self):
        """A file sits one layer below its deepest dependency."""
        graph = DependencyGraph(nodes=["/a", "/b", "/c", "/d"])
        graph.add_edge("/a", "/b")
        graph.add_edge("/b", "/c")
        graph.add_edge("/a", "/c")

        assert graph.layers() == [["/a", "/d"], ["/b"], ["/c"]]

    def test_layers_cover_every_node_once(self):
        """Layers partition the node set."""
        graph = DependencyGraph(nodes=[f"/{n}" for n in "abcdef"])
        graph.add_edge("/a", "/d")
        graph.add_edge("/b", "/d")
        graph.add_edge("/d", "/f")

        flat = [p for layer in graph.layers() for p in layer]

        assert sorted(flat) == graph.nodes
        assert len(flat) == len(set(flat))

    def test_empty_graph(self):
        """No files, no layers."""
        assert DependencyGraph().layers() == []

    def test_reverse_layers_restore_dependents_first(self):
        graph = DependencyGraph(nodes=["/a", "/b", "/c"])
        graph.add_edge("/a", "/b")

        assert graph.reverse_layers() == [["/b"], ["/a", "/c"]]
