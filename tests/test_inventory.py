import pytest

from kustomizer.inventory import (
    ChangeSetEntry,
    InventoryError,
    ObjMetadata,
    ResourceInventory,
    ResourceRef,
    add_objects_to_inventory,
    diff_inventory,
    list_meta_in_inventory,
    list_objects_in_inventory,
    new_inventory,
    parse_group_version,
    reference_to_obj_metadata_set,
)

ID = "inv-abcde"
TEST_ID = "inv-abcdefghij"


def _inventory_for(name):
    inv = new_inventory()
    add_objects_to_inventory(
        inv,
        [
            ChangeSetEntry(ObjMetadata(ID, name, "", "Secret"), "v1"),
            ChangeSetEntry(ObjMetadata(ID, name, "", "ConfigMap"), "v1"),
        ],
    )
    return inv


def test_creates_inventory_entries():
    inv = _inventory_for(ID)
    assert inv.entries == [
        ResourceRef(id=str(ObjMetadata(ID, ID, "", "Secret")), version="v1"),
        ResourceRef(id=str(ObjMetadata(ID, ID, "", "ConfigMap")), version="v1"),
    ]
    assert inv.entries[0].id == f"{ID}_{ID}__Secret"


def test_add_none_change_set_keeps_inventory():
    inv = new_inventory()
    add_objects_to_inventory(inv, None)
    assert inv.entries == []


def test_renames_resources_diff():
    old = _inventory_for(ID)
    new = _inventory_for(TEST_ID)
    stale = diff_inventory(old, new)
    assert stale == [
        {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": ID, "namespace": ID}},
        {"apiVersion": "v1", "kind": "Secret", "metadata": {"name": ID, "namespace": ID}},
    ]
    assert diff_inventory(new, new) == []


def test_obj_metadata_round_trip_with_colon():
    meta = ObjMetadata("ns", "system:auth", "rbac.authorization.k8s.io", "ClusterRole")
    text = str(meta)
    assert text == "ns_system__auth_rbac.authorization.k8s.io_ClusterRole"
    assert ObjMetadata.parse(text) == meta


def test_obj_metadata_cluster_scoped_round_trip():
    meta = ObjMetadata("", "demo", "", "Namespace")
    assert ObjMetadata.parse(str(meta)) == meta


@pytest.mark.parametrize("bad", ["nofields", "ns_kindonly", "ns_a_b_c_d"])
def test_obj_metadata_parse_errors(bad):
    with pytest.raises(InventoryError):
        ObjMetadata.parse(bad)


def test_list_objects_sorted_by_kind_order():
    inv = ResourceInventory(
        [
            ResourceRef(str(ObjMetadata("a", "web", "apps", "Deployment")), "v1"),
            ResourceRef(str(ObjMetadata("a", "x", "", "Secret")), "v1"),
            ResourceRef(str(ObjMetadata("", "a", "", "Namespace")), "v1"),
            ResourceRef(str(ObjMetadata("a", "b", "", "ConfigMap")), "v1"),
            ResourceRef(str(ObjMetadata("a", "a", "", "ConfigMap")), "v1"),
        ]
    )
    objects = list_objects_in_inventory(inv)
    assert [(o["kind"], o["metadata"].get("name")) for o in objects] == [
        ("Namespace", "a"),
        ("ConfigMap", "a"),
        ("ConfigMap", "b"),
        ("Secret", "x"),
        ("Deployment", "web"),
    ]
    assert objects[-1]["apiVersion"] == "apps/v1"
    assert "namespace" not in objects[0]["metadata"]


def test_list_meta_in_inventory_errors_on_bad_id():
    with pytest.raises(InventoryError):
        list_meta_in_inventory(ResourceInventory([ResourceRef("broken", "v1")]))


def test_list_meta_in_inventory_values():
    inv = _inventory_for(ID)
    assert list_meta_in_inventory(inv) == [
        ObjMetadata(ID, ID, "", "Secret"),
        ObjMetadata(ID, ID, "", "ConfigMap"),
    ]


@pytest.mark.parametrize(
    "value, expected",
    [("", ("", "")), ("/", ("", "")), ("v1", ("", "v1")), ("apps/v1", ("apps", "v1"))],
)
def test_parse_group_version(value, expected):
    assert parse_group_version(value) == expected


def test_parse_group_version_error():
    with pytest.raises(InventoryError):
        parse_group_version("a/b/c")


def test_reference_to_obj_metadata_set_defaults_api_version():
    refs = [
        {"kind": "Deployment", "name": "web", "namespace": "apps"},
        {"apiVersion": "v1", "kind": "ServiceAccount", "name": ID, "namespace": ID},
    ]
    assert reference_to_obj_metadata_set(refs) == [
        ObjMetadata("apps", "web", "apps", "Deployment"),
        ObjMetadata(ID, ID, "", "ServiceAccount"),
    ]