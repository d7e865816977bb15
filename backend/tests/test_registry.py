import pytest

from depwatch.errors import ConfigError, ServiceNotFound
from depwatch.registry import ServiceRegistry, normalize_ecosystem


def test_load_and_lookup(services_config, project_tree):
    registry = ServiceRegistry.load(services_config)

    assert len(registry) == 3
    assert registry.names() == ["api", "gosvc", "web"]
    web = registry.get("web")
    assert web.ecosystem == "nodejs"
    assert web.path == project_tree["web"].resolve()
    assert web.to_dict()["language"] == "nodejs"


def test_unknown_service(services_config):
    with pytest.raises(ServiceNotFound):
        ServiceRegistry.load(services_config).get("payments")


def test_enabled_filter(services_config):
    services_config["api"]["enabled"] = False
    registry = ServiceRegistry.load(services_config)
    assert [d.name for d in registry.enabled()] == ["gosvc", "web"]
    assert "api" in registry


@pytest.mark.parametrize("alias,expected", [
    ("node", "nodejs"), ("NPM", "nodejs"), ("js", "nodejs"),
    ("py", "python"), ("pip", "python"),
    ("golang", "go"), (" Go ", "go"),
])
def test_ecosystem_aliases(alias, expected):
    assert normalize_ecosystem(alias) == expected


def test_one_bad_entry_fails_the_whole_load(services_config, tmp_path):
    services_config["broken"] = {"path": str(tmp_path / "nope"), "ecosystem": "nodejs"}
    with pytest.raises(ConfigError) as exc:
        ServiceRegistry.load(services_config)
    assert "broken" in str(exc.value)


def test_unsupported_ecosystem_is_rejected(project_tree):
    with pytest.raises(ConfigError) as exc:
        ServiceRegistry.load({"rusty": {"path": str(project_tree["web"]), "ecosystem": "cargo"}})
    assert "rusty" in str(exc.value)


def test_file_path_is_rejected(project_tree):
    req = project_tree["api"] / "requirements.txt"
    with pytest.raises(ConfigError):
        ServiceRegistry.load({"api": {"path": str(req), "ecosystem": "python"}})


@pytest.mark.parametrize("name", ["all", "custom", "  "])
def test_reserved_and_empty_names(name, project_tree):
    with pytest.raises(ConfigError):
        ServiceRegistry.load({name: {"path": str(project_tree["web"]), "ecosystem": "nodejs"}})
