# llmgateway

The processing core of an AI gateway. The gateway sits between clients that
speak the OpenAI chat-completions API and the backends that answer them.

## What is in the package

- `llmgateway.mutation` holds the data exchanged with the proxy:
  `HeaderValue`, `HeaderMutation`, `BodyMutation`, `ProcessingMode` and
  `LLMTokenUsage`. It also has the helpers `is_good_status_code` and
  `set_content_length`.
- `llmgateway.translator` defines the abstract `ChatCompletionTranslator`
  (`request_body`, `response_headers`, `response_body`, `response_error`) and
  `TranslationError`.
- `llmgateway.openai_openai.OpenAIToOpenAITranslator` leaves request and
  response bodies unchanged and reads token usage from the response:
  - from a JSON response body;
  - from a streamed `data: ...` server-sent-event body, which may arrive in
    pieces of any size.

  Error responses that are not JSON are rewritten as an OpenAI-style error
  object.
- `llmgateway.awsbedrock.OpenAIToAWSBedrockTranslator` turns a chat-completion
  request into a Bedrock Converse request:
  - it rewrites `:path` to `/model/<model>/converse` or `/converse-stream`;
  - the conversion covers messages, images given as base64 data URIs, tools
    and tool choice.

  On the way back it converts Converse responses into OpenAI responses. Streamed
  event-stream responses become `chat.completion.chunk` events, and the stream
  ends with `data: [DONE]` at the end of the stream. Bedrock errors become
  OpenAI-style error objects.
- `llmgateway.bedrock_request` holds the request conversion itself:
  `parse_data_uri`, `convert_messages`, `convert_tools` and `convert_request`.
- `llmgateway.eventstream` encodes and decodes the binary event-stream framing,
  with CRC checks. It provides `encode_message`, `decode_message`,
  `decode_messages`, `EventStreamMessage` and `EventStreamError`.
- `llmgateway.costcel` implements cost expressions in a small CEL subset. It
  supports:
  - integers, `u`-suffixed unsigned integers, strings and booleans;
  - arithmetic, comparisons, `&&`, `||`, `!` and `?:`;
  - the functions `int()`, `uint()` and `string()`.

  The variables are `model`, `backend`, `input_tokens`, `output_tokens` and
  `total_tokens`. `new_program` compiles an expression and checks it with
  placeholder values. `evaluate_program` returns a non-negative integer or
  raises `CostExpressionError`, for example on unsigned overflow or a negative
  result.
- `llmgateway.server.Server` takes a stream of processing messages and hands
  each one to a processor:
  - Processors come from factories registered per exact request path with
    `register`.
  - A stream that starts without a request-headers message is handled by a
    `PassThroughProcessor`.
  - `load_config` reads a configuration mapping into a `ProcessorConfig`. It
    compiles the cost expressions and collects the declared model names.
  - In debug logs, `Authorization` values are replaced with `[REDACTED]`.
- `llmgateway.watcher` provides `ConfigWatcher` and `start_config_watcher`:
  - They poll a YAML file and pass its contents to a receiver's `load_config`
    whenever the modification time advances.
  - If the file is missing, a default configuration is loaded once.
  - At debug level, changed lines are logged.

## Installation

```
pip install llmgateway
```

## Examples

Evaluating a cost expression:

```python
from llmgateway.costcel import new_program, evaluate_program

program = new_program("model == 'cool_model' ? input_tokens * output_tokens : total_tokens")
evaluate_program(program, "cool_model", "backend", 100, 2, 3)  # 200
```

Reading token usage from a streamed OpenAI response:

```python
from llmgateway.openai_openai import OpenAIToOpenAITranslator

translator = OpenAIToOpenAITranslator()
translator.request_body({"model": "gpt-4o-mini", "stream": True})
_, _, usage = translator.response_body({}, b'data: {"usage": {"total_tokens": 42}}\n', False)
usage.total_tokens  # 42
```

Translating a request for Bedrock:

```python
from llmgateway.awsbedrock import OpenAIToAWSBedrockTranslator

translator = OpenAIToAWSBedrockTranslator()
headers, body, mode = translator.request_body(
    {"model": "some-model", "messages": [{"role": "user", "content": "hi"}]}
)
headers.set_headers[0].raw_value  # b"/model/some-model/converse"
```

## What it does not do

- There is no network listener. `Server.process` works on any object that
  has `recv()`, `send(response)` and `done()`, so the transport is up to you.
- There is no command-line program.
- The package does not choose backends by header or weight.
- It does not sign or authenticate backend requests.
- It has no built-in processor for the chat-completions path. You register the
  processors yourself.

## Running the tests

```
pip install -e ".[test]"
pytest
```