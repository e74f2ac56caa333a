# kustomizer

Building blocks for reconciling Kustomizations from Python: a resource
inventory, post-build variable substitution, path handling that stays
inside a root directory, SOPS decryption of manifests and env sources,
generation of `kustomization.yaml` files, and service-account
impersonation settings.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `kustomizer.kustomization`: the `Kustomization` model and its parts
  (`SourceReference`, `PostBuild`, `SubstituteReference`, `Decryption`),
  sources and artifacts (`Source`, `Artifact`), the `KubeClient` interface,
  `index_by`, `sort_by_dependencies`, `requests_for_revision_change` and
  `source_revision_changed`.
- `kustomizer.inventory`: `ResourceInventory`, `ResourceRef`, `ObjMetadata`,
  `new_inventory`, `add_objects_to_inventory`, `list_objects_in_inventory`,
  `list_meta_in_inventory`, `diff_inventory`,
  `reference_to_obj_metadata_set` and `parse_group_version`.
- `kustomizer.varsub`: `envsubst`, `load_variables` and
  `substitute_variables`, which apply `${var}`, `${var:=default}` and
  related forms to a resource.
- `kustomizer.securepath`: `secure_join`, `strip_root`, `secure_paths` and
  `secure_path_error`.
- `kustomizer.kustfile`: `recognized_kustomization_file_names`,
  `secure_load_kustomization_file` and `recurse_kustomization_files`.
- `kustomizer.decryptor`: `KustomizeDecryptor`, `SopsFormat`,
  `format_for_path`, `is_encrypted_secret` and `is_sops_encrypted_resource`.
- `kustomizer.generator`: `KustomizeGenerator`,
  `check_kustomize_image_exists` and `adapt_selector`.
- `kustomizer.impersonation`: `KustomizeImpersonation` and `ClientConfig`.

## Examples

Inventory bookkeeping:

```python
from kustomizer.inventory import ChangeSetEntry, ObjMetadata, new_inventory, add_objects_to_inventory, diff_inventory

old = new_inventory()
add_objects_to_inventory(old, [
    ChangeSetEntry(ObjMetadata(namespace="apps", name="web", group="", kind="ConfigMap"), "v1"),
])
new = new_inventory()
stale = diff_inventory(old, new)  # objects to prune
```

Variable substitution:

```python
from kustomizer.varsub import envsubst

values = {"zone": "az-1b"}
envsubst("zone: ${zone}\nenv: ${env:=dev}\n", values.get)
# 'zone: az-1b\nenv: dev\n'
```