import numpy as np
import pytest

from fernsse.core.trees import TreeStructure, force_ultrametric, load_tree

BALANCED = "((A:1,B:1):1,(C:1,D:1):1);"


def test_from_newick_numbers_nodes_in_postorder():
    tree = TreeStructure.from_newick(BALANCED)

    assert tree.n_tips == 4
    assert tree.n_nodes == 7
    assert tree.tip_names == ["A", "B", "C", "D"]
    assert tree.root_index == tree.n_nodes - 1
    assert tree.postorder == list(range(7))
    assert tree.is_binary()
    assert tree.get_tip_index_map() == {"A": 0, "B": 1, "C": 3, "D": 4}
    # Every child is numbered before its parent.
    for node in tree.nodes:
        for child in node.children_ids:
            assert child < node.id
            assert tree.parent_indices[child] == node.id


def test_from_newick_preserves_underscores():
    tree = TreeStructure.from_newick("(Asplenium_nidus:1,Pteris_vittata:1);")

    assert tree.tip_names == ["Asplenium_nidus", "Pteris_vittata"]


def test_tip_depths_and_total_length():
    tree = TreeStructure.from_newick("((A:1,B:2):1,C:3);")

    np.testing.assert_allclose(tree.tip_depths(), [2.0, 3.0, 3.0])
    assert tree.total_length() == pytest.approx(7.0)
    assert not tree.is_ultrametric()
    assert TreeStructure.from_newick(BALANCED).is_ultrametric()


def test_keep_tips_collapses_unifurcations():
    tree = TreeStructure.from_newick(BALANCED)

    pruned = tree.keep_tips(["A", "C", "D"])

    assert pruned.tip_names == ["A", "C", "D"]
    assert pruned.is_binary()
    lengths = {pruned.nodes[i].name: pruned.branch_lengths[i] for i in pruned.tip_indices}
    assert lengths["A"] == pytest.approx(2.0)
    assert lengths["C"] == pytest.approx(1.0)
    np.testing.assert_allclose(pruned.tip_depths(), [2.0, 2.0, 2.0])


def test_keep_tips_is_idempotent():
    tree = TreeStructure.from_newick("(((A:1,B:1):1,C:2):1,(D:2,E:2):1);")

    once = tree.keep_tips(["A", "C", "E", "D"])
    twice = once.keep_tips(once.tip_names)

    assert twice.tip_names == once.tip_names
    assert twice.to_newick() == once.to_newick()


def test_keep_tips_rejects_empty_selection():
    tree = TreeStructure.from_newick(BALANCED)

    with pytest.raises(ValueError):
        tree.keep_tips(["X"])


def test_to_newick_roundtrip_quotes_labels():
    tree = TreeStructure.from_newick("('A b':0.5,'C':0.25);")

    serialized = tree.to_newick()
    assert serialized.endswith(";")
    assert "'A b':0.500000" in serialized

    again = TreeStructure.from_newick(serialized)
    assert again.tip_names == tree.tip_names
    np.testing.assert_allclose(again.branch_lengths, tree.branch_lengths)


def test_to_newick_writes_underscores_unquoted():
    tree = TreeStructure.from_newick("((Fern_a:1,Fern_b:1):1,Fern_c:2);")

    serialized = tree.to_newick(precision=1)

    assert "'" not in serialized
    assert "Fern_a:1.0" in serialized
    assert TreeStructure.from_newick(serialized).tip_names == ["Fern_a", "Fern_b", "Fern_c"]


def test_to_dendropy_keeps_topology_and_lengths():
    tree = TreeStructure.from_newick("((A:1,B:2):1,C:3);")

    converted = tree.to_dendropy()

    assert [leaf.taxon.label for leaf in converted.leaf_node_iter()] == ["A", "B", "C"]
    assert converted.seed_node.edge.length is None
    assert TreeStructure._from_dendropy(converted).to_newick() == tree.to_newick()


def test_relabel_tips():
    tree = TreeStructure.from_newick("('A b':1,'C d':1);")

    renamed = tree.relabel_tips(lambda name: name.replace(" ", "_"))

    assert renamed.tip_names == ["A_b", "C_d"]
    assert tree.tip_names == ["A b", "C d"]
    assert renamed.keep_tips(["A_b", "C_d"]).tip_names == ["A_b", "C_d"]


def test_load_tree_reads_file(tmp_path):
    path = tmp_path / "tree.nwk"
    path.write_text(BALANCED + "\n")

    tree = load_tree(path)

    assert tree.tip_names == ["A", "B", "C", "D"]


def test_force_ultrametric_lp_minimizes_total_change():
    tree = TreeStructure.from_newick("((A:1,B:2):1,C:3);")

    forced = force_ultrametric(tree, method="lp")

    assert forced.is_ultrametric()
    np.testing.assert_allclose(forced.tip_depths(), [3.0, 3.0, 3.0], atol=1e-8)
    change = np.abs(forced.branch_lengths - tree.branch_lengths).sum()
    assert change == pytest.approx(1.0, abs=1e-8)
    assert np.all(forced.branch_lengths >= 0)


def test_force_ultrametric_extend_reaches_deepest_tip():
    tree = TreeStructure.from_newick("((A:1,B:2):1,C:1);")

    forced = force_ultrametric(tree, method="extend")

    np.testing.assert_allclose(forced.tip_depths(), [3.0, 3.0, 3.0])
    # Internal branches are untouched.
    internal = tree.internal_indices
    np.testing.assert_allclose(forced.branch_lengths[internal], tree.branch_lengths[internal])


def test_force_ultrametric_returns_ultrametric_tree_unchanged():
    tree = TreeStructure.from_newick(BALANCED)

    assert force_ultrametric(tree) is tree


def test_force_ultrametric_rejects_unknown_method():
    tree = TreeStructure.from_newick("((A:1,B:2):1,C:3);")

    with pytest.raises(ValueError):
        force_ultrametric(tree, method="nnls")
