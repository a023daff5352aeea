from typing import Any

import pytest

from jobrelay.v1.core.registries import ProcessorRegistry, Registry


class EchoProcessor:
    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        return {"echo": payload}


class SilentProcessor:
    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        return None


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    # Test empty registry
    assert registry.list() == []
    assert not registry.has("test_impl")

    # Test register and get
    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.has("test_impl")
    assert registry.list() == ["test_impl"]

    # Test KeyError for missing implementation
    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_overwrite():
    """Test that re-registering a name replaces the implementation."""
    registry = Registry[str]("Test")

    registry.register("impl", "first")
    registry.register("impl", "second")

    assert registry.get("impl") == "second"
    assert registry.list() == ["impl"]


def test_registry_freeze():
    """Test that a frozen registry rejects new registrations."""
    registry = Registry[str]("Test")
    registry.register("impl", "value")

    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("other", "value")
    # Lookups keep working
    assert registry.get("impl") == "value"


@pytest.mark.asyncio
async def test_processor_registry_invoke():
    """Test invoking a registered processor."""
    registry = ProcessorRegistry()
    registry.register("email:send", EchoProcessor())

    result = await registry.invoke("email:send", {"to": "a@example.com"})

    assert result == {"echo": {"to": "a@example.com"}}


@pytest.mark.asyncio
async def test_processor_registry_invoke_without_result():
    """Test that a processor returning nothing yields an empty result."""
    registry = ProcessorRegistry()
    registry.register("email:send", SilentProcessor())

    assert await registry.invoke("email:send", {}) == {}


@pytest.mark.asyncio
async def test_processor_registry_missing_type():
    registry = ProcessorRegistry()

    with pytest.raises(KeyError, match="No processor implementation registered"):
        await registry.invoke("email:send", {})
