import json

import pytest

from newsvoice.config import PERSONAS_FILE
from newsvoice.errors import PersonaNotFound
from newsvoice.personas import PersonaRegistry, clean_delta


@pytest.fixture()
def registry():
    return PersonaRegistry([
        {"name": "anchor", "tone": "neutral", "formality": "formal", "temperature": 0.5, "guidance": 0.7},
    ])


def test_bundled_personas_load():
    reg = PersonaRegistry.from_file(PERSONAS_FILE)
    assert "anchor" in reg.names()
    with open(PERSONAS_FILE, encoding="utf-8") as fh:
        data = json.load(fh)
    assert len(reg.names()) == len(data["personas"])


def test_out_of_range_temperature_is_clamped(registry):
    snap = registry.resolve("anchor", {"temperature": 5.0})
    assert snap.temperature == 1.0


def test_clean_delta_reports_requested_and_applied(registry):
    base = registry.resolve("anchor")
    applied, rejected = clean_delta({"temperature": 5.0, "humor": "sarcastic", "volume": 11}, base)
    assert applied == {"temperature": 1.0, "humor": "sarcastic"}
    assert rejected == ["volume"]


def test_relative_steps_and_bad_values(registry):
    base = registry.resolve("anchor")
    applied, rejected = clean_delta({"temperature": "+0.1", "guidance": True, "formality": "shouty"}, base)
    assert applied == {"temperature": 0.6}
    assert sorted(rejected) == ["formality", "guidance"]


def test_equivalent_overrides_share_identity(registry):
    a = registry.resolve("anchor", {"temperature": 0.5})
    b = registry.resolve("anchor", {"temperature": "0.5", "formality": "FORMAL"})
    c = registry.resolve("anchor")
    assert a.identity == b.identity == c.identity
    assert registry.resolve("anchor", {"temperature": 0.9}).identity != c.identity


def test_register_versions_only_on_change(registry):
    same = registry.register({"name": "anchor", "tone": "neutral"})
    assert same.version == 1
    changed = registry.register({"name": "anchor", "tone": "warm"})
    assert changed.version == 2
    assert registry.get("anchor").tone == "warm"
    assert registry.get("anchor", 1).tone == "neutral"


def test_derive_leaves_registry_untouched(registry):
    snap = registry.resolve("anchor")
    derived, applied, _ = registry.apply_delta(snap, {"tone": "sarcastic"})
    assert derived.revision == 1
    assert derived.version_tag == "anchor@1.1"
    assert registry.get("anchor").tone == "neutral"
    assert snap.tone == "neutral"


def test_promote_creates_new_base_version(registry):
    snap = registry.resolve("anchor")
    derived, _, _ = registry.apply_delta(snap, {"tone": "dry"})
    promoted = registry.promote(derived)
    assert promoted.version == 2
    assert registry.get("anchor").tone == "dry"


def test_unknown_persona_raises(registry):
    with pytest.raises(PersonaNotFound):
        registry.resolve("nobody")
    with pytest.raises(PersonaNotFound):
        registry.get("anchor", 7)
