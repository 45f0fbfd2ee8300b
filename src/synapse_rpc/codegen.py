"""Generate a typed accessor module from an API schema.

The generated module wraps an RPCClient with one class per service and one
method per procedure, annotated with the procedure's input and output models
and documented with the procedure description:

    from myapp.rpc_client import APIClient

    async with RPCClient(api_schema) as rpc:
        api = APIClient(rpc)
        out = await api.Greeting.SayHello(SayHelloInput(name={"en": "Ada"}))
"""

from __future__ import annotations

import keyword
import re

from .schema import APISchema, MethodKind, Procedure, Service
from .shapes import Shape

HEADER = '"""Typed accessors for {source}.\n\nGenerated by `synapse-rpc codegen`. Do not edit.\n"""\n'

_SIMPLE_TYPES = (str, int, float, bool, bytes)


def _identifier(name: str) -> str:
    ident = re.sub(r"\W", "_", name)
    if not ident or ident[0].isdigit():
        ident = f"_{ident}"
    if keyword.iskeyword(ident):
        ident = f"{ident}_"
    return ident


class _Imports:
    """Collects the model classes the generated module refers to."""

    def __init__(self) -> None:
        self._by_module: dict[str, set[str]] = {}

    def annotation(self, shape: Shape) -> str:
        type_ = shape.type
        if shape.is_model:
            self._by_module.setdefault(type_.__module__, set()).add(type_.__name__)
            return type_.__name__
        if type_ in _SIMPLE_TYPES:
            return type_.__name__
        return "Any"

    def render(self) -> list[str]:
        return [
            f"from {module} import {', '.join(sorted(names))}"
            for module, names in sorted(self._by_module.items())
        ]


def _render_method(service: Service, procedure: Procedure, imports: _Imports) -> list[str]:
    name = _identifier(procedure.name)
    input_type = imports.annotation(procedure.input)
    output_type = imports.annotation(procedure.output)
    doc = procedure.description or f"{procedure.method.value.title()} {procedure.name}."
    doc = doc.replace('"""', '\\"\\"\\"')
    target = f'"{service.name}", "{procedure.name}"'

    if procedure.method.is_one_shot:
        lines = [
            f"    async def {name}(",
            f"        self, args: {input_type} | dict[str, Any], *, headers: dict[str, str] | None = None",
            f"    ) -> {output_type}:",
            f'        """{doc}"""',
            f"        return await self._client.call({target}, args, headers=headers)",
        ]
    elif procedure.method == MethodKind.SUBSCRIPTION:
        lines = [
            f"    def {name}(self, args: {input_type} | dict[str, Any], **kwargs: Any) -> PushStream:",
            f'        """{doc}\n\n        Events are {output_type} values.\n        """',
            f"        return self._client.subscribe({target}, args, **kwargs)",
        ]
    else:
        lines = [
            f"    def {name}(self, *, headers: dict[str, str] | None = None) -> DuplexChannel:",
            f'        """{doc}\n\n        Sends {input_type} messages, receives {output_type} messages.\n        """',
            f"        return self._client.connect({target}, headers=headers)",
        ]
    return lines


def render_client_module(
    schema: APISchema,
    source: str = "the API schema",
    class_name: str = "APIClient",
) -> str:
    """Render the accessor module source for `schema`."""
    imports = _Imports()
    body: list[str] = []

    for service in schema:
        body.append("")
        body.append("")
        body.append(f"class {_identifier(service.name)}Accessors:")
        body.append(f'    """Procedures of the {service.name} service."""')
        body.append("")
        body.append("    def __init__(self, client: RPCClient) -> None:")
        body.append("        self._client = client")
        for procedure in service:
            body.append("")
            body.extend(_render_method(service, procedure, imports))

    body.append("")
    body.append("")
    body.append(f"class {class_name}:")
    body.append('    """Typed entry point over an RPCClient."""')
    body.append("")
    body.append("    def __init__(self, client: RPCClient) -> None:")
    body.append("        self.client = client")
    for service in schema:
        ident = _identifier(service.name)
        body.append(f"        self.{ident} = {ident}Accessors(client)")

    header = [
        HEADER.format(source=source),
        "from __future__ import annotations",
        "",
        "from typing import Any",
        "",
        "from synapse_rpc.sdk import DuplexChannel, PushStream, RPCClient",
        *imports.render(),
    ]
    return "\n".join(header + body) + "\n"

