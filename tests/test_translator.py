import pytest

from llmgateway.awsbedrock import OpenAIToAWSBedrockTranslator
from llmgateway.openai_openai import OpenAIToOpenAITranslator
from llmgateway.translator import ChatCompletionTranslator, TranslationError


def test_abstract_cannot_be_instantiated():
    with pytest.raises(TypeError):
        ChatCompletionTranslator()


@pytest.mark.parametrize(
    "factory", [OpenAIToOpenAITranslator, OpenAIToAWSBedrockTranslator]
)
def test_concrete_translators_have_no_abstract_methods(factory):
    assert issubclass(factory, ChatCompletionTranslator)
    assert set(getattr(factory, "__abstractmethods__", frozenset())) == set()


@pytest.mark.parametrize(
    "factory", [OpenAIToOpenAITranslator, OpenAIToAWSBedrockTranslator]
)
def test_response_headers_without_streaming_has_no_mutation(factory):
    translator = factory()
    assert isinstance(translator, ChatCompletionTranslator)
    assert translator.response_headers({"content-type": "application/json"}) is None


def test_translation_error_message():
    err = TranslationError("boom")
    assert isinstance(err, Exception)
    assert str(err) == "boom"