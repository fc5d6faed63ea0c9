"""Variable interpolation tests."""

from playbook_engine.engine.variable_resolver import (
    VariableResolver, find_references, get_path, unresolved_references
)


def test_whole_token_keeps_native_type():
    resolver = VariableResolver({"amount": 125.5, "tags": ["vip"], "client": {"id": "ENT-1"}})
    assert resolver.resolve("${amount}") == 125.5
    assert resolver.resolve("${tags}") == ["vip"]
    assert resolver.resolve("${client.id}") == "ENT-1"


def test_embedded_tokens_are_stringified():
    resolver = VariableResolver({"name": "Acme", "count": 3})
    assert resolver.resolve("Welcome ${name} (${count} seats)") == "Welcome Acme (3 seats)"


def test_unresolved_reference_passes_through_literally():
    resolver = VariableResolver({"name": "Acme"})
    assert resolver.resolve("${missing}") == "${missing}"
    assert resolver.resolve("Hi ${name}, ref ${order.id}") == "Hi Acme, ref ${order.id}"


def test_resolves_nested_structures():
    resolver = VariableResolver({"client": {"id": "ENT-9"}, "items": [{"sku": "A1"}]})
    resolved = resolver.resolve({"to": "${client.id}", "lines": [{"sku": "${items.0.sku}"}], "qty": 2})
    assert resolved == {"to": "ENT-9", "lines": [{"sku": "A1"}], "qty": 2}


def test_get_path_indexes_lists_and_defaults():
    context = {"orders": [{"id": "O-1"}, {"id": "O-2"}]}
    assert get_path("orders.1.id", context) == "O-2"
    assert get_path("orders.5.id", context, "none") == "none"
    assert get_path("orders.id", context) is None


def test_unresolved_references_reports_unknown_roots():
    value = {"a": "${client.id}", "b": ["${run_id}", "${ghost}"]}
    assert find_references(value) == ["client.id", "run_id", "ghost"]
    assert unresolved_references(value, {"client", "run_id"}) == ["ghost"]
