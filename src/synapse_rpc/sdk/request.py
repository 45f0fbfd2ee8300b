"""Request/response channel for QUERY and MUTATION procedures.

One call produces exactly one validated output or exactly one error:
1. Input is validated locally; failure raises InvalidInput before any I/O
2. QUERY sends GET ?payload=<json>, MUTATION sends POST with a JSON body
3. A non-2xx response raises RemoteError with the server's text verbatim
4. The body must be {"data": ...}; the data is validated against the output shape

No retries are performed here.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from ..config import ClientConfig
from ..errors import InvalidInput, MalformedResponse, RemoteError, TransportError
from ..schema import MethodKind, Procedure

logger = logging.getLogger(__name__)

PAYLOAD_PARAM = "payload"


def encode_input(procedure: Procedure, args: Any) -> Any:
    """Validate call input and return its JSON-compatible encoding.

    Raises:
        InvalidInput: The input violates the procedure's input shape
    """
    result = procedure.input.validate(args)
    if not result.ok:
        logger.debug(f"Input validation failed for {procedure.name}: {result.violations}")
        raise InvalidInput(result.violations)
    return procedure.input.dump(result.value)


def decode_output(procedure: Procedure, data: Any) -> Any:
    """Validate output data received from the server.

    Raises:
        MalformedResponse: The data violates the procedure's output shape
    """
    result = procedure.output.validate(data)
    if not result.ok:
        details = "; ".join(str(v) for v in result.violations)
        raise MalformedResponse(
            f"Output of {procedure.name} does not match its shape: {details}",
            violations=result.violations,
        )
    return result.value


class RequestChannel:
    """Executes one-shot procedure calls over HTTP."""

    def __init__(self, http: httpx.AsyncClient, config: ClientConfig):
        self._http = http
        self.config = config

    async def call(
        self,
        service: str,
        procedure: Procedure,
        args: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Call a QUERY or MUTATION procedure and return its validated output."""
        if not procedure.method.is_one_shot:
            raise ValueError(
                f"{service}.{procedure.name} is a {procedure.method.value} procedure; "
                "use subscribe() or connect()"
            )

        payload = encode_input(procedure, {} if args is None else args)
        path = self.config.procedure_path(service, procedure.name)
        request_headers = {**self.config.headers, **(headers or {})}

        try:
            if procedure.method == MethodKind.QUERY:
                response = await self._http.get(
                    path,
                    params={PAYLOAD_PARAM: json.dumps(payload)},
                    headers=request_headers,
                )
            else:
                response = await self._http.post(path, json=payload, headers=request_headers)
        except httpx.TransportError as e:
            raise TransportError(f"{service}.{procedure.name}: {e}") from e

        if not response.is_success:
            raise RemoteError(response.text, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponse(f"Response from {procedure.name} is not JSON: {e}") from e

        if not isinstance(body, dict) or "data" not in body:
            raise MalformedResponse(f"Response from {procedure.name} has no 'data' field")

        return decode_output(procedure, body["data"])
