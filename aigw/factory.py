"""Choice of a translator for a combination of API schemas."""

from __future__ import annotations

from collections.abc import Callable

from .bedrock import new_openai_to_bedrock_translator
from .config import APISCHEMA_AWS_BEDROCK, APISCHEMA_OPENAI, VersionedAPISchema
from .translator import TranslationError, Translator, new_openai_to_openai_translator

Factory = Callable[[str], Translator]


def new_factory(input_schema: VersionedAPISchema, output_schema: VersionedAPISchema) -> Factory:
    """Return a function that creates a translator for a request path.

    Schema versions are not taken into account.
    """
    if input_schema.schema == APISCHEMA_OPENAI:
        if output_schema.schema == APISCHEMA_OPENAI:
            return new_openai_to_openai_translator
        if output_schema.schema == APISCHEMA_AWS_BEDROCK:
            return new_openai_to_bedrock_translator
    raise TranslationError(
        f"unsupported API schema combination: client={input_schema}, backend={output_schema}"
    )