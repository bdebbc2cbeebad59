# aigw

`aigw` is the request-processing core of an AI gateway. A proxy hands each HTTP
exchange to it in four steps (request headers, request body, response headers
and response body), and `aigw` decides what to do with each step:

- reads the model name from an OpenAI-style `/v1/chat/completions` request;
- picks a backend from the configured rules by exact header match, choosing at
  random by weight when a rule has several backends;
- translates the request and response between the OpenAI schema and the
  backend's schema: OpenAI passes through unchanged, AWS Bedrock goes through
  the Converse API, with streamed Bedrock responses decoded from the AWS
  event-stream format and re-emitted as server-sent events;
- signs Bedrock requests with AWS Signature Version 4 using credentials from
  the environment;
- decompresses gzip-encoded response bodies before translating them;
- reports the number of tokens used as dynamic metadata, so the proxy can
  apply token-based rate limits.

## Configuration

The configuration is a YAML document:

```yaml
inputSchema:
  schema: OpenAI
selectedBackendHeaderKey: x-envoy-ai-gateway-selected-backend
modelNameHeaderKey: x-model-name
tokenUsageMetadata:
  namespace: ai_gateway_llm_ns
  key: token_usage
rules:
- backends:
  - name: kserve
    weight: 1
    outputSchema:
      schema: OpenAI
  - name: awsbedrock
    weight: 10
    outputSchema:
      schema: AWSBedrock
    auth:
      aws: {}
  headers:
  - name: x-model-name
    value: llama3.3333
- backends:
  - name: openai
    outputSchema:
      schema: OpenAI
  headers:
  - name: x-model-name
    value: gpt4.4444
```

Load it with `aigw.config.load_config_yaml(path)`, or build an
`aigw.config.Config` from a dictionary with `Config.from_dict(data)`. Unknown
keys are ignored; values of the wrong type raise `ValueError`.

When several rules match, the last one wins. A rule whose backends all have
weight 0 always uses its first backend.

## Running the processor

An `aigw.server.Server` holds the current configuration and makes one
`aigw.processor.Processor` for each stream:

```python
import logging

from aigw.processor import Processor
from aigw.server import Server
from aigw.watcher import start_config_watcher

logger = logging.getLogger("aigw")
server = Server(Processor, logger)

# Loads the file once now, then polls it every 5 seconds and reloads it when it changes.
watcher = start_config_watcher("extproc-config.yaml", server, 5.0, logger)

# For each incoming stream of processing requests:
#     server.process(stream)

# On shutdown:
watcher.stop()
```

A stream is any object with three methods:

- `done()` returns true once the stream has been cancelled by the caller;
- `recv()` returns the next `aigw.messages.ProcessingRequest`, and raises
  `EOFError` or `aigw.server.StreamCancelled` when the stream has ended;
- `send(response)` delivers an `aigw.messages.ProcessingResponse`.

`Server.process` returns normally when the stream ends or is cancelled by the
peer. It raises `aigw.server.StatusError` with code `CANCELLED` when `done()`
is true, and with code `UNKNOWN` when receiving, processing or sending fails.
`Server.check` returns `HealthStatus.SERVING`; `Server.watch` raises
`StatusError` with code `UNIMPLEMENTED`.

## Custom routing

`aigw.router.new_router(config, new_custom_router)` accepts a callable that
receives the default router and the configuration and returns an
`aigw.router.Router`, whose `calculate(headers)` returns the chosen
`aigw.config.Backend`. Set `Server.new_custom_router` to have
`Server.load_config` use it.

## AWS credentials

Bedrock backends are signed for the `bedrock` service in `us-east-1` with the
credentials found in `AWS_ACCESS_KEY_ID` (or `AWS_ACCESS_KEY`),
`AWS_SECRET_ACCESS_KEY` (or `AWS_SECRET_KEY`) and, when present,
`AWS_SESSION_TOKEN`. `aigw.backendauth.sign_request` can also be called on its
own to sign any request.

## Event streams

`aigw.eventstream.encode_message` and `decode_message` read and write single
messages of the AWS event-stream format. `decode_message` raises
`IncompleteMessageError` when more data is needed.

## What this package does not do

`aigw` has no command-line program and does not listen on a socket or speak
gRPC itself. It does not forward requests to backends either: it only tells
the proxy which backend to use and how to change the request and response.
The code that accepts streams from the proxy and calls `Server.process` is up
to the application.