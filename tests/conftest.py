from __future__ import annotations

from typing import Any

import pytest

import cli_mcp_server as cm


def _tool(
    name: str,
    *arguments: cm.ArgumentSpec,
    catalog: str = "demo",
    command: str = "",
    output: cm.OutputSpec | None = None,
    chain: tuple[cm.ChainStep, ...] = (),
    description: str = "",
) -> cm.ToolDefinition:
    return cm.ToolDefinition(
        catalog=catalog,
        name=name,
        description=description or f"{name} tool",
        command=command,
        arguments=tuple(arguments),
        output=output or cm.OutputSpec(),
        chain=chain,
    )


def _catalog(
    *tools: cm.ToolDefinition,
    name: str = "demo",
    command: str = "echo",
    working_dir: str = ".",
    timeout: float | None = None,
    environment: tuple[str, ...] = (),
    **security: Any,
) -> cm.Catalog:
    return cm.Catalog(
        name=name,
        settings=cm.Settings(
            command=command,
            working_dir=working_dir,
            timeout=timeout,
            environment=tuple(environment),
        ),
        security=cm.SecurityPolicy(**security),
        tools=tuple(tools),
    )


@pytest.fixture
def make_tool():
    return _tool


@pytest.fixture
def make_catalog():
    return _catalog


@pytest.fixture
def builder() -> cm.CommandBuilder:
    return cm.CommandBuilder()
