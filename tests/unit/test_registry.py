import pytest

from core.exceptions import AdapterNotFoundError, AdapterRegistrationError, ConfigValidationError
from engine.adapters import AdapterRole, Extractor, Operator
from engine.registry import AdapterRegistry
from schemas.pipeline import Step

from conftest import ListExtractor, MemoryLoader, PriceFilter


class UpperCase(Operator):
    code = "upper"

    async def apply(self, record, config, context):
        return {k: v.upper() if isinstance(v, str) else v for k, v in record.items()}


class TestRegistration:
    def test_register_and_get(self):
        registry = AdapterRegistry()
        adapter = registry.register(UpperCase())

        assert registry.get(AdapterRole.OPERATOR, "upper") is adapter
        assert (AdapterRole.OPERATOR, "upper") in registry
        assert len(registry) == 1

    def test_same_code_in_different_roles(self):
        class UpperSource(Extractor):
            code = "upper"

            async def pull(self, config, checkpoint, context):
                raise NotImplementedError

        registry = AdapterRegistry()
        registry.register(UpperCase())
        registry.register(UpperSource())

        assert len(registry) == 2

    def test_duplicate_code_rejected(self):
        registry = AdapterRegistry()
        registry.register(UpperCase())

        with pytest.raises(AdapterRegistrationError) as exc_info:
            registry.register(UpperCase())

        assert "already registered" in exc_info.value.message

    @pytest.mark.parametrize("code", ["", "1st", "has space", "dot.ted", None])
    def test_invalid_codes_rejected(self, code):
        adapter = UpperCase()
        adapter.code = code

        with pytest.raises(AdapterRegistrationError):
            AdapterRegistry().register(adapter)

    def test_role_interface_enforced(self):
        with pytest.raises(AdapterRegistrationError) as exc_info:
            AdapterRegistry().register(UpperCase(), role=AdapterRole.LOADER)

        assert exc_info.value.context["role"] == "LOADER"

    def test_capacity_limit(self):
        registry = AdapterRegistry(max_adapters=1)
        registry.register(UpperCase())

        with pytest.raises(AdapterRegistrationError):
            registry.register(PriceFilter())

    def test_unregister(self):
        registry = AdapterRegistry()
        registry.register(UpperCase())

        assert registry.unregister(AdapterRole.OPERATOR, "upper") is True
        assert registry.unregister(AdapterRole.OPERATOR, "upper") is False
        assert (AdapterRole.OPERATOR, "upper") not in registry


class TestLookup:
    def test_get_unknown_raises(self):
        with pytest.raises(AdapterNotFoundError):
            AdapterRegistry().get(AdapterRole.LOADER, "memory")

    def test_find_unknown_returns_none(self):
        assert AdapterRegistry().find(AdapterRole.LOADER, "memory") is None

    def test_resolve_by_step_type(self, registry, loader):
        step = Step.model_validate({"key": "save", "type": "LOAD", "config": {"adapterCode": "memory", "table": "t"}})

        assert registry.resolve(step) is loader

    def test_resolve_step_without_adapter(self, registry):
        with pytest.raises(AdapterNotFoundError):
            registry.resolve(Step(key="route", type="ROUTE"))

    def test_definitions_expose_config_schema(self):
        registry = AdapterRegistry()
        registry.register(ListExtractor([]))
        registry.register(MemoryLoader())

        definitions = {d.code: d for d in registry.definitions()}

        assert definitions["list-source"].paginated is True
        assert "pageSize" in definitions["list-source"].config_schema["properties"]
        assert definitions["memory"].config_schema["required"] == ["table"]
        assert [d.code for d in registry.definitions(AdapterRole.LOADER)] == ["memory"]


class TestConfigParsing:
    def test_parse_valid_config(self):
        config = ListExtractor([]).parse_config({"adapterCode": "list-source", "pageSize": 10})

        assert config.page_size == 10

    def test_missing_required_field(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            MemoryLoader().parse_config({}, step_key="save")

        assert exc_info.value.code == "MISSING_CONFIG"
        assert exc_info.value.context["step_key"] == "save"
        assert exc_info.value.context["field_errors"][0]["field"] == "table"

    def test_wrong_type(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            ListExtractor([]).parse_config({"pageSize": "lots"})

        assert exc_info.value.code == "INVALID_CONFIG"
