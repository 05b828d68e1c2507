import pickle

import pytest

from ledgerflow.composer.refs import ABSENT, Ref, collect_refs, is_absent, resolve, strip_absent


def test_absent_is_falsy_and_absorbs_lookups():
    assert not ABSENT
    assert ABSENT.anything is ABSENT
    assert ABSENT["key"][0] is ABSENT
    assert list(ABSENT) == []
    assert is_absent(ABSENT)
    assert pickle.loads(pickle.dumps(ABSENT)) is ABSENT


def test_resolve_walks_paths_and_containers():
    outputs = {"cart": {"id": "c-1", "items": [{"sku": "a"}, {"sku": "b"}]}}
    cart = Ref("cart")

    value = resolve({"id": cart.id, "skus": [cart["items"][1].sku], "n": 3}, outputs)

    assert value == {"id": "c-1", "skus": ["b"], "n": 3}


def test_resolve_missing_paths_yield_none_and_unknown_nodes_absent():
    outputs = {"cart": {"id": "c-1"}, "skipped": ABSENT}

    assert resolve(Ref("cart").customer.email, outputs) is None
    assert resolve(Ref("skipped").id, outputs) is ABSENT
    assert resolve(Ref("never-ran"), outputs) is ABSENT


def test_refs_are_immutable_and_hashable():
    ref = Ref("a").b
    assert ref == Ref("a", ("b",))
    assert len({ref, Ref("a", ("b",))}) == 1
    with pytest.raises(AttributeError):
        ref.node_id = "x"
    with pytest.raises(TypeError):
        list(ref)


def test_collect_and_strip():
    value = {"a": Ref("x"), "b": [Ref("y").z, 1], "c": (Ref("x"),)}
    assert [r.node_id for r in collect_refs(value)] == ["x", "y", "x"]
    assert strip_absent({"a": ABSENT, "b": [ABSENT, 1]}) == {"a": None, "b": [None, 1]}
