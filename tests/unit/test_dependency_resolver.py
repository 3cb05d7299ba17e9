import pytest

from m2k.errors import ManifestError
from m2k.MODELS.build_spec import BuildSpec
from m2k.RUNNERS.dependency_resolver import DependencyResolver


def specs(**deps):
    return {name: BuildSpec(name=name, depends_on=after) for name, after in deps.items()}


def test_resolve_order_keeps_declaration_order():
    order = DependencyResolver().resolve_order(specs(web=["api"], api=["base"], base=[], docs=[]))
    assert order == ["base", "api", "web", "docs"]


def test_unknown_dependencies_are_ignored():
    assert DependencyResolver().resolve_order(specs(api=["postgres"])) == ["api"]


def test_cycle_is_a_manifest_error():
    with pytest.raises(ManifestError):
        DependencyResolver().resolve_order(specs(a=["b"], b=["a"]))


def test_waves():
    all_specs = specs(base=[], api=["base"], web=["api"], docs=[])
    resolver = DependencyResolver()
    assert resolver.resolve_waves(all_specs, ["base", "api", "web", "docs"]) == [["base", "docs"], ["api"], ["web"]]
    # base was skipped, so nothing has to wait for it
    assert resolver.resolve_waves(all_specs, ["api", "web"]) == [["api"], ["web"]]
    assert resolver.resolve_waves(all_specs, []) == []
