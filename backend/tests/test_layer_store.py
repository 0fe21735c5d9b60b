from __future__ import annotations

import itertools

import pytest

from errors import LayerNotFoundError
from layers.store import DEFAULT_GROUP_NAME, LayerStore
from layers.types import Feature, MapState


def _point(lon: float, lat: float, **props) -> dict:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [lon, lat]},
        "properties": props,
    }


def _store() -> LayerStore:
    counter = itertools.count(1)
    return LayerStore(id_factory=lambda: f"id{next(counter)}")


def test_groups_layers_and_features():
    store = _store()
    group = store.create_layer_group("Base")
    layer = store.create_layer(group.id, "Places")
    assert layer is not None

    assert store.add_feature_to_layer(layer.id, _point(1, 2, name="a"))
    (stored,) = layer.features
    assert stored.id is not None
    assert store.get_feature_by_id(stored.id) is stored


def test_create_layer_rejects_unknown_group_and_duplicate_id():
    store = _store()
    group = store.create_layer_group("Base")
    assert store.create_layer("nope", "x") is None
    assert store.create_layer(group.id, "x", layer_id="roads") is not None
    assert store.create_layer(group.id, "y", layer_id="roads") is None


def test_misses_return_false_instead_of_raising():
    store = _store()
    assert store.add_feature_to_layer("missing", _point(0, 0)) is False
    assert store.remove_feature("missing", "f") is False
    assert store.modify_feature("missing", "f", {"a": 1}) is False
    assert store.style_feature("f", {"color": "red"}) is False
    assert store.get_feature_by_id("f") is None


def test_ids_compare_by_string_form():
    store = _store()
    layer = store.ensure_layer("places")
    store.insert_feature(layer.id, {**_point(0, 0), "id": 3})
    assert store.get_feature_by_id("3") is not None
    assert store.remove_feature(layer.id, "3")
    assert layer.features == []


def test_modify_is_shallow_merge_and_style_merges():
    store = _store()
    layer = store.ensure_layer("places")
    f = store.insert_feature(layer.id, _point(0, 0, name="a", kind="x"))
    store.modify_feature(layer.id, f.id, {"name": "b"})
    assert f.properties == {"name": "b", "kind": "x"}

    store.style_feature(f.id, {"color": "red"})
    store.style_feature(f.id, {"weight": 3})
    assert f.style == {"color": "red", "weight": 3}
    store.style_feature(f.id, {"opacity": 1}, replace=True)
    assert f.style == {"opacity": 1}


def test_ensure_layer_resolves_by_id_then_name_else_creates():
    store = _store()
    group = store.create_layer_group("Base")
    named = store.create_layer(group.id, "Roads")
    assert store.ensure_layer(named.id) is named
    assert store.ensure_layer("Roads") is named

    created = store.ensure_layer("buffers")
    assert created.id == "buffers"
    groups = {g.name: g for g in store.get_state().layers}
    assert created in groups[DEFAULT_GROUP_NAME].layers


def test_ensure_layer_raises_when_the_layer_cannot_be_created(monkeypatch):
    store = _store()
    monkeypatch.setattr(store, "create_layer", lambda *args, **kwargs: None)
    with pytest.raises(LayerNotFoundError) as exc_info:
        store.ensure_layer("buffers")
    assert exc_info.value.layer_id == "buffers"


def test_default_id_factory_generates_distinct_ids():
    store = LayerStore()
    layer = store.ensure_layer("places")
    assert store.add_feature_to_layer(layer.id, _point(0, 0))
    assert store.add_feature_to_layer(layer.id, _point(0, 0))
    first, second = layer.features
    assert first.id and second.id
    assert first.id != second.id
    assert store.get_state().layers[0].id != layer.id


def test_duplicate_ids_are_accepted_first_match_wins():
    store = _store()
    a = store.ensure_layer("a")
    b = store.ensure_layer("b")
    first = store.insert_feature(a.id, {**_point(0, 0), "id": "dup"})
    store.insert_feature(b.id, {**_point(1, 1), "id": "dup"})
    assert store.get_feature_by_id("dup") is first


def test_visibility_filters_all_features():
    store = _store()
    a = store.ensure_layer("a")
    b = store.ensure_layer("b")
    store.insert_feature(a.id, _point(0, 0))
    store.insert_feature(b.id, _point(1, 1))
    store.set_layer_visibility(b.id, False)
    assert len(store.all_features()) == 2
    assert len(store.all_features(visible_only=True)) == 1


def test_selection_toggles_and_clears():
    store = _store()
    layer = store.ensure_layer("a")
    f1 = store.insert_feature(layer.id, _point(0, 0))
    f2 = store.insert_feature(layer.id, _point(1, 1))

    assert store.select_feature(f1.id) == [f1.id]
    assert store.select_feature(f2.id, multi=True) == [f1.id, f2.id]
    assert store.select_feature(f1.id, multi=True) == [f2.id]
    assert store.get_state().selected_feature_id == f2.id

    store.remove_feature(layer.id, f2.id)
    assert store.selected_feature_ids() == []
    store.clear_selection()
    assert store.get_state().selected_feature_id is None


def test_listeners_see_events_and_state_round_trips():
    store = _store()
    seen: list[str] = []
    remove = store.add_listener(lambda event, payload: seen.append(event))
    layer = store.ensure_layer("a")
    store.insert_feature(layer.id, _point(0, 0, name="n"))
    store.set_view((51.5, -0.12), 10)
    remove()
    store.clear_selection()

    assert seen == ["create_layer_group", "create_layer", "add_feature", "zoom_to"]

    snapshot = store.snapshot()
    assert snapshot["center"] == [51.5, -0.12]
    restored = LayerStore(MapState.from_dict(snapshot))
    assert restored.snapshot() == snapshot
    assert isinstance(restored.all_features()[0], Feature)
