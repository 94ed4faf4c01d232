"""Conversion of OpenAI chat completion requests into Bedrock Converse requests."""

from __future__ import annotations

import base64
import binascii
import json
import re
from typing import Any

from llmgateway.translator import TranslationError

CONVERSATION_ROLE_USER = "user"

_DATA_URI = re.compile(r"\Adata:(.+?)?(;base64)?,", re.DOTALL)

_IMAGE_FORMATS = {
    "image/png": "png",
    "image/jpeg": "jpeg",
    "image/gif": "gif",
    "image/webp": "webp",
}


def parse_data_uri(uri: str) -> tuple[str, bytes]:
    """Split a base64 data URI into its content type and decoded bytes."""
    match = _DATA_URI.match(uri)
    if match is None:
        raise TranslationError("data uri does not have a valid format")
    content_type = match.group(1) or ""
    try:
        data = base64.b64decode(uri[match.end():], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise TranslationError(f"illegal base64 data: {exc}") from exc
    return content_type, data


def _text_parts(content: Any) -> list[str] | None:
    """Return the texts of a list of text content parts, or None if not such a list."""
    if not isinstance(content, list):
        return None
    texts = []
    for part in content:
        if not isinstance(part, dict):
            return None
        texts.append(str(part.get("text", "")))
    return texts


def _image_block(url: str) -> dict[str, Any]:
    try:
        content_type, data = parse_data_uri(url)
    except TranslationError as exc:
        raise TranslationError(f"failed to parse image URL: {url} {exc}") from exc
    image_format = _IMAGE_FORMATS.get(content_type)
    if image_format is None:
        raise TranslationError(
            f"unsupported image type: {content_type} please use one of [png, jpeg, gif, webp]"
        )
    return {
        "image": {
            "format": image_format,
            "source": {"bytes": base64.b64encode(data).decode("ascii")},
        }
    }


def _user_message(message: dict[str, Any], role: str) -> dict[str, Any]:
    content = message.get("content")
    if isinstance(content, str):
        return {"role": role, "content": [{"text": content}]}
    if isinstance(content, list):
        blocks = []
        for part in content:
            if not isinstance(part, dict):
                continue
            kind = part.get("type")
            if kind == "text":
                blocks.append({"text": str(part.get("text", ""))})
            elif kind == "image_url":
                image_url = part.get("image_url") or {}
                blocks.append(_image_block(str(image_url.get("url", ""))))
        return {"role": role, "content": blocks}
    raise TranslationError("unexpected content type")


def _tool_call_arguments(arguments: str) -> dict[str, Any] | None:
    try:
        value = json.loads(arguments)
    except (ValueError, TypeError) as exc:
        raise TranslationError(f"failed to unmarshal tool call arguments: {exc}") from exc
    if value is not None and not isinstance(value, dict):
        raise TranslationError("failed to unmarshal tool call arguments: not a JSON object")
    return value


def _assistant_message(message: dict[str, Any], role: str) -> dict[str, Any]:
    blocks: list[dict[str, Any]] = []
    content = message.get("content")
    if isinstance(content, str):
        blocks.append({"text": content})
    elif isinstance(content, list):
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "refusal":
                blocks.append({"text": str(part.get("refusal", ""))})
            elif "text" in part:
                blocks.append({"text": str(part["text"])})
    elif message.get("refusal") is not None:
        blocks.append({"text": str(message["refusal"])})
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        blocks.append(
            {
                "toolUse": {
                    "name": function.get("name", ""),
                    "toolUseId": call.get("id", ""),
                    "input": _tool_call_arguments(function.get("arguments", "")),
                }
            }
        )
    return {"role": role, "content": blocks}


def _system_blocks(message: dict[str, Any], kind: str) -> list[dict[str, str]]:
    content = message.get("content")
    if isinstance(content, str):
        return [{"text": content}]
    texts = _text_parts(content)
    if texts is None:
        raise TranslationError(f"unexpected content type for {kind} message")
    return [{"text": text} for text in texts]


def _tool_message(message: dict[str, Any], role: str) -> dict[str, Any]:
    content = message.get("content")
    if isinstance(content, str):
        results = [{"text": content}]
    else:
        texts = _text_parts(content)
        if texts is None:
            raise TranslationError(
                f"unexpected content type for tool message: {type(content).__name__}"
            )
        results = [{"text": text} for text in texts]
    return {
        "role": role,
        "content": [
            {
                "toolResult": {
                    "content": results,
                    "toolUseId": message.get("tool_call_id", ""),
                }
            }
        ],
    }


def convert_messages(request: dict[str, Any]) -> tuple[list[dict[str, Any]], list[dict[str, str]] | None]:
    """Convert the chat messages into Bedrock messages and system blocks.

    The system blocks are None when the request has no system or developer message.
    """
    messages: list[dict[str, Any]] = []
    system: list[dict[str, str]] | None = None
    for message in request.get("messages") or []:
        role = message.get("role")
        if role == "user":
            messages.append(_user_message(message, role))
        elif role == "assistant":
            messages.append(_assistant_message(message, role))
        elif role in ("system", "developer"):
            system = (system or []) + _system_blocks(message, role)
        elif role == "tool":
            # Bedrock has no tool role; tool results go in as user content.
            messages.append(_tool_message(message, CONVERSATION_ROLE_USER))
        else:
            raise TranslationError(f"unexpected role: {role}")
    return messages, system


def convert_tools(request: dict[str, Any]) -> dict[str, Any]:
    """Build the Bedrock tool configuration from the request's tools and tool choice."""
    tools = []
    for tool in request.get("tools") or []:
        function = tool.get("function")
        if function is None:
            continue
        schema: dict[str, Any] = {}
        if function.get("parameters") is not None:
            schema["json"] = function["parameters"]
        tools.append(
            {
                "toolSpec": {
                    "name": function.get("name", ""),
                    "description": function.get("description", ""),
                    "inputSchema": schema,
                }
            }
        )
    config: dict[str, Any] = {"tools": tools}

    choice = request.get("tool_choice")
    if choice is None:
        return config
    model = request.get("model") or ""
    if isinstance(choice, str):
        if choice == "auto":
            config["toolChoice"] = {"auto": {}}
        elif choice == "required":
            config["toolChoice"] = {"any": {}}
        elif "anthropic" in model and "claude" in model:
            # Only Anthropic Claude supports forcing a specific tool by name.
            config["toolChoice"] = {"tool": {"name": choice}}
    elif isinstance(choice, dict):
        config["toolChoice"] = {"tool": {"name": str(choice.get("type", ""))}}
    else:
        raise TranslationError(f"unexpected type: {type(choice).__name__}")
    return config


def convert_request(request: dict[str, Any]) -> dict[str, Any]:
    """Convert an OpenAI chat completion request into a Bedrock Converse request."""
    inference: dict[str, Any] = {}
    if request.get("max_tokens") is not None:
        inference["maxTokens"] = request["max_tokens"]
    stop = request.get("stop")
    if stop is not None:
        inference["stopSequences"] = [stop] if isinstance(stop, str) else list(stop)
    if request.get("temperature") is not None:
        inference["temperature"] = request["temperature"]
    if request.get("top_p") is not None:
        inference["topP"] = request["top_p"]

    messages, system = convert_messages(request)
    converse: dict[str, Any] = {"inferenceConfig": inference, "messages": messages}
    if system is not None:
        converse["system"] = system
    if request.get("tools"):
        converse["toolConfig"] = convert_tools(request)
    return converse