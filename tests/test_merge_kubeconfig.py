from unittest import mock

import pytest
import yaml

from wsauth.errors import MergeTargetUnparseable
from wsauth.merge import FileKind, MergeTarget, Ownership, apply, render

OWNED = Ownership(prefixes=("sso-aws:",))

USER_KUBECONFIG = """\
apiVersion: v1
kind: Config
clusters:
- name: home
  cluster:
    server: https://home.example:6443
- name: sso-aws:old:gone
  cluster:
    server: https://gone.example
contexts:
- name: home
  context:
    cluster: home
    user: home-admin
- name: sso-aws:old:gone
  context:
    cluster: sso-aws:old:gone
    user: sso-aws:old:gone
users:
- name: home-admin
  user:
    token: secret
- name: sso-aws:old:gone
  user:
    token: stale
current-context: sso-aws:old:gone
"""


def _section(name, server="https://eks.example"):
    return {
        "cluster": {"server": server},
        "context": {"cluster": name, "user": name},
        "user": {"exec": {"command": "aws", "args": ["eks", "get-token"]}},
    }


def _names(doc, key):
    return [e["name"] for e in doc[key]]


# Test intent: owned entries are added, stale owned entries removed, and the
# user's own clusters, contexts and users are preserved unchanged.
def test_merge_preserves_unowned_entries(tmp_path):
    cfg = tmp_path / "config"
    cfg.write_text(USER_KUBECONFIG)
    name = "sso-aws:dev:main"

    report = apply(MergeTarget(str(cfg), FileKind.KUBECONFIG, OWNED), {name: _section(name)})
    doc = yaml.safe_load(cfg.read_text())

    assert _names(doc, "clusters") == ["home", name]
    assert _names(doc, "contexts") == ["home", name]
    assert _names(doc, "users") == ["home-admin", name]
    assert doc["users"][0] == {"name": "home-admin", "user": {"token": "secret"}}
    assert doc["contexts"][1]["context"] == {"cluster": name, "user": name}
    assert "current-context" not in doc
    assert report.added == [name]
    assert report.removed == ["sso-aws:old:gone"]


# Test intent: a current-context pointing at a user entry is left alone.
def test_current_context_kept_when_unowned():
    text = USER_KUBECONFIG.replace("current-context: sso-aws:old:gone", "current-context: home")

    merged, _ = render(MergeTarget("k", FileKind.KUBECONFIG, OWNED), {}, text)

    assert yaml.safe_load(merged)["current-context"] == "home"


# Test intent: a changed owned entry is replaced in place and reported; a
# second identical run reports it unchanged and does not rewrite the file.
def test_replace_then_idempotent(tmp_path):
    cfg = tmp_path / "config"
    name = "sso-aws:dev:main"
    target = MergeTarget(str(cfg), FileKind.KUBECONFIG, OWNED)
    apply(target, {name: _section(name, "https://old")})

    report = apply(target, {name: _section(name, "https://new")})
    assert report.replaced == [name]
    first = cfg.read_bytes()

    with mock.patch("wsauth.merge.base.atomic_write_bytes") as write:
        again = apply(target, {name: _section(name, "https://new")})
    assert again.unchanged == [name]
    assert not again.written
    write.assert_not_called()
    assert cfg.read_bytes() == first


# Test intent: entries kept for accounts that failed enumeration survive.
def test_kept_prefix_survives():
    ownership = Ownership(prefixes=("sso-aws:",), keep_prefixes=("sso-aws:old:",))

    merged, report = render(MergeTarget("k", FileKind.KUBECONFIG, ownership), {}, USER_KUBECONFIG)
    doc = yaml.safe_load(merged)

    assert "sso-aws:old:gone" in _names(doc, "clusters")
    assert doc["current-context"] == "sso-aws:old:gone"
    assert report.removed == []


# Test intent: an empty or missing file becomes a fresh kubeconfig document.
def test_new_file(tmp_path):
    cfg = tmp_path / ".kube" / "config"
    name = "sso-aws:dev:main"

    apply(MergeTarget(str(cfg), FileKind.KUBECONFIG, OWNED), {name: _section(name)})
    doc = yaml.safe_load(cfg.read_text())

    assert doc["apiVersion"] == "v1"
    assert doc["kind"] == "Config"
    assert _names(doc, "clusters") == [name]


# Test intent: YAML that cannot be parsed, or that does not have the
# kubeconfig shape, is refused and the file left untouched.
@pytest.mark.parametrize("text", ["clusters: [unclosed\n", "- just\n- a list\n", "clusters: nope\n"])
def test_unparseable_kubeconfig(tmp_path, text):
    cfg = tmp_path / "config"
    cfg.write_text(text)

    with pytest.raises(MergeTargetUnparseable):
        apply(MergeTarget(str(cfg), FileKind.KUBECONFIG, OWNED), {"sso-aws:x:y": _section("sso-aws:x:y")})
    assert cfg.read_text() == text


HAND_EDITED = """\
apiVersion: v1
kind: Config
# clusters I manage myself
clusters:
- name: home   # laptop cluster
  cluster: {server: "https://home.example:6443"}
- name: sso-aws:111:old:eks
  cluster:
    server: https://old.example

# contexts below are shared with the team
contexts:
  - name: home
    context: {cluster: home, user: home}
users:
- name: home
  user:
    token: 'abc'   # rotated monthly
current-context: home
"""


# Test intent: replacing owned entries keeps the user's comments, quoting and
# flow-style entries byte for byte, including a differently indented list.
def test_hand_formatted_entries_survive_byte_identical(tmp_path):
    cfg = tmp_path / "config"
    cfg.write_text(HAND_EDITED)
    name = "sso-aws:111:dev:eks"

    report = apply(MergeTarget(str(cfg), FileKind.KUBECONFIG, OWNED), {name: _section(name)})
    text = cfg.read_text()

    assert text.startswith(
        "apiVersion: v1\nkind: Config\n# clusters I manage myself\nclusters:\n"
        "- name: home   # laptop cluster\n"
        '  cluster: {server: "https://home.example:6443"}\n'
    )
    assert "\n# contexts below are shared with the team\ncontexts:\n  - name: home\n" in text
    assert "    context: {cluster: home, user: home}\n" in text
    assert "    token: 'abc'   # rotated monthly\n" in text
    assert text.endswith("current-context: home\n")
    assert "old.example" not in text
    doc = yaml.safe_load(text)
    assert _names(doc, "clusters") == ["home", name]
    assert _names(doc, "contexts") == ["home", name]
    assert _names(doc, "users") == ["home", name]
    assert doc["contexts"][1]["context"] == {"cluster": name, "user": name}
    assert report.added == [name]
    assert report.removed == ["sso-aws:111:old:eks"]


# Test intent: a kubeconfig with empty lists gets owned entries without losing
# its comments.
def test_empty_lists_filled_in_place():
    text = "# managed by hand\napiVersion: v1\nclusters: null\ncontexts: []\nkind: Config\nusers:\n"
    name = "sso-aws:111:dev:eks"

    merged, _ = render(MergeTarget("k", FileKind.KUBECONFIG, OWNED), {name: _section(name)}, text)

    assert merged.startswith("# managed by hand\napiVersion: v1\nclusters:\n- name: sso-aws:111:dev:eks\n")
    doc = yaml.safe_load(merged)
    assert doc["kind"] == "Config"
    assert [_names(doc, key) for key in ("clusters", "contexts", "users")] == [[name]] * 3


# Test intent: names outside the ownership marker are never written, so the
# user's own context cannot be overwritten or duplicated.
def test_unowned_names_are_not_written(tmp_path):
    cfg = tmp_path / "config"
    cfg.write_text(HAND_EDITED)

    with mock.patch("wsauth.merge.base.atomic_write_bytes") as write:
        report = apply(
            MergeTarget(str(cfg), FileKind.KUBECONFIG, Ownership(prefixes=("sso-aws:",), keep_prefixes=("sso-aws:111:",))),
            {"home": _section("home", "https://evil.example")},
        )

    write.assert_not_called()
    assert not report.changed
    assert cfg.read_text() == HAND_EDITED


# Test intent: an owned entry missing from one list is restored and written
# even though its other entries are already up to date.
def test_missing_entry_restored(tmp_path):
    cfg = tmp_path / "config"
    name = "sso-aws:111:dev:eks"
    target = MergeTarget(str(cfg), FileKind.KUBECONFIG, OWNED)
    apply(target, {name: _section(name)})
    doc = yaml.safe_load(cfg.read_text())
    doc["clusters"] = []
    cfg.write_text(yaml.safe_dump(doc, sort_keys=False))

    report = apply(target, {name: _section(name)})

    assert report.replaced == [name]
    assert report.written
    assert _names(yaml.safe_load(cfg.read_text()), "clusters") == [name]
