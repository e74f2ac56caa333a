import pytest

from kustomizer.kustomization import (
    Artifact,
    DependencyCycleError,
    KubeClient,
    Kustomization,
    NotFoundError,
    Source,
    SourceReference,
    index_by,
    requests_for_revision_change,
    sort_by_dependencies,
    source_revision_changed,
)


def _cm(namespace, name, data):
    return {"kind": "ConfigMap", "metadata": {"namespace": namespace, "name": name}, "data": data}


def test_client_get_returns_independent_copy():
    client = KubeClient([_cm("apps", "settings", {"a": "1"})])
    first = client.get("ConfigMap", "apps", "settings")
    assert first["data"] == {"a": "1"}
    first["data"]["a"] = "changed"
    assert client.get("ConfigMap", "apps", "settings")["data"] == {"a": "1"}


def test_client_missing_object_raises():
    client = KubeClient([_cm("apps", "settings", {})])
    with pytest.raises(NotFoundError) as info:
        client.get("Secret", "apps", "settings")
    assert info.value.kind == "Secret"
    assert info.value.name == "settings"


def test_index_by_defaults_to_kustomization_namespace():
    k = Kustomization("app", namespace="apps", source_ref=SourceReference("GitRepository", "repo"))
    assert index_by("GitRepository")(k) == ["apps/repo"]


def test_index_by_uses_source_namespace():
    k = Kustomization(
        "app", namespace="apps", source_ref=SourceReference("GitRepository", "repo", "flux-system")
    )
    assert index_by("GitRepository")(k) == ["flux-system/repo"]


def test_index_by_other_kind_is_empty():
    k = Kustomization("app", source_ref=SourceReference("Bucket", "repo"))
    assert index_by("GitRepository")(k) == []


def test_index_by_rejects_other_objects():
    with pytest.raises(TypeError):
        index_by("GitRepository")(Source("GitRepository", "repo"))


def test_sort_puts_dependencies_first():
    a = Kustomization("a", depends_on=["b"])
    b = Kustomization("b", depends_on=["c"])
    c = Kustomization("c")
    assert [k.name for k in sort_by_dependencies([a, b, c])] == ["c", "b", "a"]


def test_sort_keeps_order_without_dependencies():
    items = [Kustomization(n) for n in ("x", "y", "z")]
    assert sort_by_dependencies(items) == items


def test_sort_cross_namespace_dependency():
    a = Kustomization("a", namespace="one", depends_on=["two/b"])
    b = Kustomization("b", namespace="two")
    b_same_name = Kustomization("b", namespace="one")
    result = sort_by_dependencies([a, b_same_name, b])
    assert result.index(b) < result.index(a)
    assert len(result) == 3


def test_sort_ignores_external_dependencies():
    a = Kustomization("a", depends_on=["missing"])
    assert sort_by_dependencies([a]) == [a]


def test_sort_detects_cycle():
    a = Kustomization("a", depends_on=["b"])
    b = Kustomization("b", depends_on=["a"])
    with pytest.raises(DependencyCycleError):
        sort_by_dependencies([a, b])


def test_requests_for_revision_change_filters_and_orders():
    source = Source("GitRepository", "repo", "apps", Artifact(revision="v2"))
    ref = SourceReference("GitRepository", "repo")
    first = Kustomization("first", namespace="apps", source_ref=ref, depends_on=["second"])
    second = Kustomization("second", namespace="apps", source_ref=ref)
    current = Kustomization("current", namespace="apps", source_ref=ref, last_attempted_revision="v2")
    other = Kustomization("other", namespace="apps", source_ref=SourceReference("GitRepository", "else"))
    result = requests_for_revision_change(source, [first, second, current, other], "GitRepository")
    assert result == [("apps", "second"), ("apps", "first")]


def test_requests_without_artifact_is_empty():
    source = Source("GitRepository", "repo", "apps")
    k = Kustomization("k", namespace="apps", source_ref=SourceReference("GitRepository", "repo"))
    assert requests_for_revision_change(source, [k], "GitRepository") == []


def test_requests_with_cycle_is_empty():
    source = Source("GitRepository", "repo", "apps", Artifact(revision="v1"))
    ref = SourceReference("GitRepository", "repo")
    a = Kustomization("a", namespace="apps", source_ref=ref, depends_on=["b"])
    b = Kustomization("b", namespace="apps", source_ref=ref, depends_on=["a"])
    assert requests_for_revision_change(source, [a, b], "GitRepository") == []


@pytest.mark.parametrize(
    "old, new, expected",
    [
        (None, Source("GitRepository", "r", artifact=Artifact("v1")), False),
        (Source("GitRepository", "r"), None, False),
        (Source("GitRepository", "r"), Source("GitRepository", "r", artifact=Artifact("v1")), True),
        (
            Source("GitRepository", "r", artifact=Artifact("v1")),
            Source("GitRepository", "r", artifact=Artifact("v2")),
            True,
        ),
        (
            Source("GitRepository", "r", artifact=Artifact("v1")),
            Source("GitRepository", "r", artifact=Artifact("v1")),
            False,
        ),
        (Source("GitRepository", "r", artifact=Artifact("v1")), Source("GitRepository", "r"), False),
    ],
)
def test_source_revision_changed(old, new, expected):
    assert source_revision_changed(old, new) is expected