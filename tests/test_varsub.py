import base64

import pytest

from kustomizer.kustomization import KubeClient, Kustomization, PostBuild, SubstituteReference
from kustomizer.varsub import SubstitutionError, envsubst, load_variables, substitute_variables

NS = "vars-abcde"


def _lookup(values):
    return lambda key: values.get(key, "")


def _configmap(name, data):
    return {"kind": "ConfigMap", "metadata": {"name": name, "namespace": NS}, "data": data}


def _secret(name, data):
    encoded = {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}
    return {"kind": "Secret", "metadata": {"name": name, "namespace": NS}, "data": encoded}


def _service_account():
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {
            "name": NS,
            "namespace": NS,
            "labels": {"environment": "${env:=dev}", "region": "${_Region}", "zone": "${zone}"},
        },
    }


def _kustomization(substitute, refs):
    return Kustomization(NS, namespace=NS, post_build=PostBuild(substitute, refs))


def test_replaces_vars():
    client = KubeClient([_configmap("cfg", {"zone": "\naz-1a\n"}), _secret("sec", {"zone": "\naz-1b\n"})])
    k = _kustomization(
        {"_Region": "eu-central-1"},
        [SubstituteReference("ConfigMap", "cfg"), SubstituteReference("Secret", "sec")],
    )
    sa = substitute_variables(client, k, _service_account())
    assert sa["metadata"]["labels"] == {"environment": "dev", "region": "eu-central-1", "zone": "az-1b"}

    manifest = {"apiVersion": "v1", "kind": "Secret", "metadata": {"name": NS}, "stringData": {"zone": "${zone}"}}
    assert substitute_variables(client, k, manifest)["stringData"]["zone"] == "az-1b"


def _optional_sa():
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": NS, "labels": {"color": "${color:=blue}", "shape": "${shape:=square}"}},
    }


def _optional_kustomization():
    return _kustomization(
        {"var_substitution_enabled": "true"},
        [SubstituteReference("ConfigMap", "cfg", True), SubstituteReference("Secret", "sec", True)],
    )


def test_replaces_vars_from_optional_sources():
    client = KubeClient([_configmap("cfg", {"color": "\nred\n"}), _secret("sec", {"shape": "\ntriangle\n"})])
    sa = substitute_variables(client, _optional_kustomization(), _optional_sa())
    assert sa["metadata"]["labels"] == {"color": "red", "shape": "triangle"}


def test_tolerates_absent_optional_sources():
    sa = substitute_variables(KubeClient(), _optional_kustomization(), _optional_sa())
    assert sa["metadata"]["labels"] == {"color": "blue", "shape": "square"}


def test_missing_required_source_raises():
    k = _kustomization({}, [SubstituteReference("ConfigMap", "cfg")])
    with pytest.raises(SubstitutionError, match="substitute from 'ConfigMap/cfg' error"):
        load_variables(KubeClient(), k)


def test_inline_vars_override_sources():
    client = KubeClient([_configmap("cfg", {"zone": "a"})])
    k = _kustomization({"zone": "b"}, [SubstituteReference("ConfigMap", "cfg")])
    assert load_variables(client, k) == {"zone": "b"}


def test_disabled_resource_is_skipped():
    resource = _service_account()
    resource["metadata"]["annotations"] = {"kustomize.toolkit.fluxcd.io/substitute": "disabled"}
    assert substitute_variables(KubeClient(), _kustomization({"zone": "z"}, []), resource) is None


def test_invalid_var_name_raises():
    with pytest.raises(SubstitutionError, match="var name is invalid"):
        substitute_variables(KubeClient(), _kustomization({"1bad": "x"}, []), _service_account())


def test_no_vars_leaves_resource_untouched():
    resource = _service_account()
    result = substitute_variables(KubeClient(), _kustomization({}, []), resource)
    assert result["metadata"]["labels"]["zone"] == "${zone}"


@pytest.mark.parametrize(
    "text, values, expected",
    [
        ("${env:=dev}", {}, "dev"),
        ("${env:=dev}", {"env": "prod"}, "prod"),
        ("$name-${name}", {"name": "x"}, "x-x"),
        ("${missing}", {}, ""),
        ("${name:+set}", {"name": "x"}, "set"),
        ("${name:+set}", {}, ""),
        ("${#name}", {"name": "abc"}, "3"),
        ("${name^^}", {"name": "abc"}, "ABC"),
        ("${name,,}", {"name": "ABC"}, "abc"),
        ("${name^}", {"name": "abc"}, "Abc"),
        ("${name:1:2}", {"name": "abcd"}, "bc"),
        ("${name#*-}", {"name": "a-b-c"}, "b-c"),
        ("${name##*-}", {"name": "a-b-c"}, "c"),
        ("${name%-*}", {"name": "a-b-c"}, "a-b"),
        ("${name%%-*}", {"name": "a-b-c"}, "a"),
        ("${name/-/+}", {"name": "a-b-c"}, "a+b-c"),
        ("${name//-/+}", {"name": "a-b-c"}, "a+b+c"),
        ("${outer:=${inner}}", {"inner": "deep"}, "deep"),
        ("cost $5", {}, "cost $5"),
    ],
)
def test_envsubst(text, values, expected):
    assert envsubst(text, _lookup(values)) == expected


def test_envsubst_unclosed_brace():
    with pytest.raises(SubstitutionError):
        envsubst("${name", _lookup({}))


def test_envsubst_required_value():
    with pytest.raises(SubstitutionError, match="needed"):
        envsubst("${name:?needed}", _lookup({}))