"""The external processing server: dispatches stream messages to per-path processors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from llmgateway.costcel import CostExpressionError, Program, new_program
from llmgateway.mutation import BodyMutation, HeaderMutation, HeaderValue, ProcessingMode

REQUEST_HEADERS = "request_headers"
REQUEST_BODY = "request_body"
RESPONSE_HEADERS = "response_headers"
RESPONSE_BODY = "response_body"

SERVING = "SERVING"

SENSITIVE_HEADER_REDACTED_VALUE = b"[REDACTED]"
SENSITIVE_HEADER_KEYS = ("authorization",)
HEADER_MATCH_EXACT = "Exact"


class ProcessingError(Exception):
    """Raised when a stream cannot be processed; ``code`` names the status."""

    def __init__(self, message: str, code: str = "UNKNOWN") -> None:
        super().__init__(message)
        self.code = code


class StreamClosed(Exception):
    """Raised by a stream's ``recv`` when the peer has finished or cancelled."""


@dataclass
class HeaderMap:
    """An ordered list of headers."""

    headers: list[HeaderValue] = field(default_factory=list)


@dataclass
class ProcessingRequest:
    """One message received from the proxy; ``kind`` names its phase."""

    kind: str | None = None
    headers: HeaderMap | None = None
    body: bytes = b""
    end_of_stream: bool = False


@dataclass
class ProcessingResponse:
    """One message sent back to the proxy."""

    kind: str | None = None
    header_mutation: HeaderMutation | None = None
    body_mutation: BodyMutation | None = None
    clear_route_cache: bool = False
    mode_override: ProcessingMode | None = None


@dataclass
class RequestCost:
    """A configured request cost with its compiled expression, if any."""

    metadata_key: str
    type: str
    cel: str = ""
    program: Program | None = None


@dataclass
class ProcessorConfig:
    """The configuration shared by the processors of a server."""

    uuid: str = ""
    schema: dict[str, Any] = field(default_factory=dict)
    selected_backend_header_key: str = ""
    model_name_header_key: str = ""
    metadata_namespace: str = ""
    rules: list[dict[str, Any]] = field(default_factory=list)
    request_costs: list[RequestCost] = field(default_factory=list)
    declared_models: list[str] = field(default_factory=list)


class PassThroughProcessor:
    """Answers every phase with an empty response of the same kind."""

    def process_request_headers(self, headers):
        return ProcessingResponse(kind=REQUEST_HEADERS)

    def process_request_body(self, body, end_of_stream):
        return ProcessingResponse(kind=REQUEST_BODY)

    def process_response_headers(self, headers):
        return ProcessingResponse(kind=RESPONSE_HEADERS)

    def process_response_body(self, body, end_of_stream):
        return ProcessingResponse(kind=RESPONSE_BODY)


ProcessorFactory = Callable[[ProcessorConfig, dict, logging.Logger], Any]


class Server:
    """Routes each stream to the processor registered for its request path."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.config = ProcessorConfig()
        self.processors: dict[str, ProcessorFactory] = {}

    def load_config(self, config: Mapping[str, Any]) -> None:
        """Replace the configuration with one built from ``config``."""
        rules = list(config.get("rules") or [])
        declared_models: list[str] = []
        for rule in rules:
            # Only exact header matches name a model that can be listed.
            for header in rule.get("headers") or []:
                match_type = header.get("type")
                if match_type is not None and match_type != HEADER_MATCH_EXACT:
                    continue
                declared_models.append(header.get("value", ""))

        costs: list[RequestCost] = []
        for cost in config.get("llmRequestCosts") or []:
            expr = cost.get("cel") or ""
            program = None
            if expr:
                try:
                    program = new_program(expr)
                except CostExpressionError as exc:
                    raise ValueError(f"cannot create CEL program for cost: {exc}") from exc
            costs.append(
                RequestCost(
                    metadata_key=cost.get("metadataKey", ""),
                    type=cost.get("type", ""),
                    cel=expr,
                    program=program,
                )
            )

        self.config = ProcessorConfig(
            uuid=config.get("uuid", ""),
            schema=dict(config.get("schema") or {}),
            selected_backend_header_key=config.get("selectedBackendHeaderKey", ""),
            model_name_header_key=config.get("modelNameHeaderKey", ""),
            metadata_namespace=config.get("metadataNamespace", ""),
            rules=rules,
            request_costs=costs,
            declared_models=declared_models,
        )

    def register(self, path: str, factory: ProcessorFactory) -> None:
        """Register a processor factory for an exact request path."""
        self.processors[path] = factory

    def _processor_for_path(self, request_headers: dict[str, str]) -> Any:
        path = request_headers.get(":path", "")
        factory = self.processors.get(path)
        if factory is None:
            raise ProcessingError(f"no processor defined for path: {path}", code="NOT_FOUND")
        try:
            return factory(self.config, request_headers, self.logger)
        except Exception as exc:
            raise ProcessingError(str(exc), code="NOT_FOUND") from exc

    def process(self, stream: Any) -> None:
        """Serve one stream until it closes; raise ProcessingError on failure.

        The stream provides ``recv()``, ``send(response)`` and ``done()``.
        """
        self.logger.debug("handling a new stream: config_uuid=%s", self.config.uuid)
        # Without a request headers phase an earlier filter has already answered,
        # so there is nothing to do but pass messages through.
        processor: Any = PassThroughProcessor()
        while True:
            if stream.done():
                raise ProcessingError("context canceled", code="CANCELLED")
            try:
                request = stream.recv()
            except StreamClosed:
                return
            except Exception as exc:
                self.logger.error("cannot receive stream request: %s", exc)
                raise ProcessingError(f"cannot receive stream request: {exc}") from exc

            if request.kind == REQUEST_HEADERS and request.headers is not None:
                try:
                    processor = self._processor_for_path(headers_to_map(request.headers))
                except ProcessingError as exc:
                    self.logger.error("cannot get processor: %s", exc)
                    raise

            try:
                response = self.process_msg(processor, request)
            except ProcessingError as exc:
                self.logger.error("error processing request message: %s", exc)
                raise ProcessingError(f"error processing request message: {exc}") from exc
            try:
                stream.send(response)
            except Exception as exc:
                self.logger.error("cannot send response: %s", exc)
                raise ProcessingError(f"cannot send response: {exc}") from exc

    def process_msg(self, processor: Any, request: ProcessingRequest) -> ProcessingResponse:
        """Hand one message to ``processor`` according to its phase."""
        debug = self.logger.isEnabledFor(logging.DEBUG)
        kind = request.kind
        if kind == REQUEST_HEADERS:
            if debug:
                filtered = filter_sensitive_headers_for_logging(
                    request.headers, SENSITIVE_HEADER_KEYS
                )
                self.logger.debug("request headers processing: request_headers=%s", filtered)
            response = self._call(
                "request headers", processor.process_request_headers, request.headers
            )
            self.logger.debug("request headers processed: response=%s", response)
            return response
        if kind == REQUEST_BODY:
            self.logger.debug("request body processing: request=%s", request)
            response = self._call(
                "request body",
                processor.process_request_body,
                request.body,
                request.end_of_stream,
            )
            if debug:
                filtered_body = filter_sensitive_body_for_logging(
                    response, self.logger, SENSITIVE_HEADER_KEYS
                )
                self.logger.debug("request body processed: response=%s", filtered_body)
            return response
        if kind == RESPONSE_HEADERS:
            self.logger.debug("response headers processing: response_headers=%s", request.headers)
            response = self._call(
                "response headers", processor.process_response_headers, request.headers
            )
            self.logger.debug("response headers processed: response=%s", response)
            return response
        if kind == RESPONSE_BODY:
            self.logger.debug("response body processing: request=%s", request)
            response = self._call(
                "response body",
                processor.process_response_body,
                request.body,
                request.end_of_stream,
            )
            self.logger.debug("response body processed: response=%s", response)
            return response
        self.logger.error("unknown request type: %r", kind)
        raise ProcessingError(f"unknown request type: {kind!r}")

    @staticmethod
    def _call(phase: str, handler: Callable[..., Any], *args: Any) -> Any:
        try:
            return handler(*args)
        except Exception as exc:
            raise ProcessingError(f"cannot process {phase}: {exc}") from exc

    def check(self, request: Any = None) -> str:
        """Health check: the server is always serving."""
        service = getattr(request, "service", "") if request is not None else ""
        status = SERVING
        self.logger.debug("health check: service=%r status=%s", service, status)
        return status

    def watch(self, request: Any = None, stream: Any = None) -> None:
        """Health watch is not supported."""
        message = "Watch is not implemented"
        self.logger.debug("health watch requested: %s", message)
        raise ProcessingError(message, code="UNIMPLEMENTED")


def filter_sensitive_headers_for_logging(
    headers: HeaderMap | None, sensitive_keys: tuple[str, ...] | list[str]
) -> list[tuple[str, str]] | None:
    """Return (key, value) pairs with the values of sensitive headers redacted."""
    if headers is None:
        return None
    redacted = SENSITIVE_HEADER_REDACTED_VALUE.decode()
    filtered: list[tuple[str, str]] = []
    for header in headers.headers:
        if header.key.lower() in sensitive_keys:
            filtered.append((header.key, redacted))
            continue
        text = header.text
        if text is not None:
            filtered.append((header.key, text))
    return filtered


def filter_sensitive_body_for_logging(
    response: ProcessingResponse | None,
    logger: logging.Logger,
    sensitive_keys: tuple[str, ...] | list[str],
) -> ProcessingResponse:
    """Return a copy of a request body response with sensitive set-headers redacted.

    The original response is left untouched; responses of other kinds are returned as they are.
    """
    if response is None:
        return ProcessingResponse()
    if response.kind != REQUEST_BODY:
        return response
    original = response.header_mutation or HeaderMutation()
    set_headers: list[HeaderValue] = []
    for header in original.set_headers:
        if header.key.lower() in sensitive_keys:
            logger.debug("filtering sensitive header: header_key=%s", header.key)
            set_headers.append(
                HeaderValue(key=header.key, raw_value=SENSITIVE_HEADER_REDACTED_VALUE)
            )
        else:
            set_headers.append(header)
    return ProcessingResponse(
        kind=REQUEST_BODY,
        header_mutation=HeaderMutation(
            set_headers=set_headers, remove_headers=list(original.remove_headers)
        ),
        body_mutation=response.body_mutation,
        clear_route_cache=response.clear_route_cache,
        mode_override=response.mode_override,
    )


def headers_to_map(headers: HeaderMap | None) -> dict[str, str]:
    """Turn a header map into a dict; later duplicates win, undecodable values are dropped."""
    result: dict[str, str] = {}
    if headers is None:
        return result
    for header in headers.headers:
        text = header.text
        if text is not None:
            result[header.key] = text
    return result