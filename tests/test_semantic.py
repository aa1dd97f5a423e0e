import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from annotation_service.engine.semantic import (
    SemanticClassifier,
    build_user_prompt,
    clean_json_response,
    is_function_word,
)
from annotation_service.schemas.annotation import WordToClassify


def words(*items):
    return [WordToClassify(word=w) for w in items]


def completion(content):
    mock = MagicMock()
    mock.raise_for_status.return_value = None
    mock.json.return_value = {"choices": [{"message": {"content": content}}]}
    return mock


def reply(*items):
    return json.dumps({"classifications": list(items)})


@pytest.fixture
def classifier():
    return SemanticClassifier(
        api_url="http://llm.test/v1/chat/completions",
        api_key="secret",
        batch_size=15,
        batch_delay=1.5,
        sleep=MagicMock(),
    )


def test_clean_json_response_strips_fences():
    assert clean_json_response('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert clean_json_response('```\n{"a": 1}```') == '{"a": 1}'
    assert clean_json_response('  {"a": 1}  ') == '{"a": 1}'


def test_is_function_word():
    assert is_function_word("DET")
    assert is_function_word("VERB", "AUX")
    assert not is_function_word("NOUN", "NOUN")
    assert not is_function_word(None)


def test_prompt_lists_words_and_codes(classifier):
    prompt = build_user_prompt(
        [WordToClassify(word="cuia", lemma="cuia", pos="NOUN"), WordToClassify(word="saudade")],
        classifier.taxonomy,
    )

    assert "1. cuia (lemma: cuia) [NOUN]" in prompt
    assert "2. saudade" in prompt
    assert "- SE:" in prompt
    assert "- AP.ALI:" in prompt


@patch("annotation_service.engine.semantic.requests.post")
def test_classify_parses_fenced_reply(mock_post, classifier):
    mock_post.return_value = completion("```json\n" + reply(
        {"word": "banco", "domain_code": "OA", "alternate_codes": ["AP", "ZZ", "OA", "AP"],
         "is_polysemous": False, "confidence": 0.85},
        {"word": "saudade", "domain_code": "se", "confidence": 1.4},
    ) + "\n```")

    results = classifier.classify(words("banco", "saudade"))

    assert [r.word for r in results] == ["banco", "saudade"]
    assert results[0].domain_code == "OA"
    assert results[0].alternate_codes == ["AP"]
    assert results[0].is_polysemous is True
    assert results[0].source == "llm_batch"
    assert results[1].domain_code == "SE"
    assert results[1].confidence == 1.0

    _, kwargs = mock_post.call_args
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert kwargs["json"]["messages"][0]["role"] == "system"


@patch("annotation_service.engine.semantic.requests.post")
def test_unknown_code_becomes_sentinel(mock_post, classifier):
    mock_post.return_value = completion(reply(
        {"word": "cuia", "domain_code": "XYZ", "confidence": 0.7},
    ))

    result = classifier.classify(words("cuia"))[0]

    assert result.domain_code == "NC"
    assert result.confidence == 0.7


@patch("annotation_service.engine.semantic.requests.post")
def test_unparsable_reply_falls_back(mock_post, classifier):
    mock_post.return_value = completion("Sorry, I cannot help with that.")

    results = classifier.classify(words("cuia", "mate"))

    assert [r.domain_code for r in results] == ["NC", "NC"]
    assert all(r.confidence == 0.5 for r in results)
    assert all(r.source == "fallback" for r in results)


@patch("annotation_service.engine.semantic.requests.post")
def test_content_parts_reply_falls_back(mock_post, classifier):
    """Replies whose content is a list of parts instead of a string"""
    mock_post.return_value = completion([{"type": "text", "text": "{}"}])

    results = classifier.classify(words("amor"))

    assert [r.domain_code for r in results] == ["NC"]
    assert results[0].source == "fallback"


@patch("annotation_service.engine.semantic.requests.post")
def test_blank_reply_falls_back(mock_post, classifier):
    mock_post.return_value = completion("   ")

    assert classifier.classify(words("amor"))[0].source == "fallback"


@patch("annotation_service.engine.semantic.requests.post")
def test_missing_field_falls_back(mock_post, classifier):
    mock_post.return_value = completion(reply({"word": "cuia", "confidence": 0.9}))

    assert classifier.classify(words("cuia"))[0].domain_code == "NC"


@patch("annotation_service.engine.semantic.requests.post")
def test_count_mismatch_falls_back(mock_post, classifier):
    mock_post.return_value = completion(reply(
        {"word": "cuia", "domain_code": "OA", "confidence": 0.9},
    ))

    results = classifier.classify(words("cuia", "mate"))

    assert len(results) == 2
    assert all(r.domain_code == "NC" for r in results)


@patch("annotation_service.engine.semantic.requests.post")
def test_http_error_falls_back(mock_post, classifier):
    mock_post.side_effect = requests.HTTPError("429 Too Many Requests")

    assert classifier.classify(words("cuia"))[0].source == "fallback"


def test_unconfigured_classifier_falls_back():
    classifier = SemanticClassifier(api_url="", sleep=MagicMock())

    with patch("annotation_service.engine.semantic.requests.post") as mock_post:
        results = classifier.classify(words("cuia"))
        mock_post.assert_not_called()

    assert results[0].domain_code == "NC"


@patch("annotation_service.engine.semantic.requests.post")
def test_classify_all_batches_with_delay(mock_post, classifier):
    """32 words at 15 per batch: three requests and a pause between each"""

    def answer(url, headers, json, timeout):
        prompt = json["messages"][1]["content"]
        count = sum(1 for line in prompt.splitlines() if line.split(". ")[0].isdigit())
        return completion(reply(*[
            {"word": f"w{i}", "domain_code": "NA", "confidence": 0.8} for i in range(count)
        ]))

    mock_post.side_effect = answer
    items = words(*[f"palavra{i}" for i in range(32)])

    results = classifier.classify_all(items)

    assert len(results) == 32
    assert [r.word for r in results] == [w.word for w in items]
    assert mock_post.call_count == 3
    assert classifier._sleep.call_count == 2
    classifier._sleep.assert_called_with(1.5)


def test_grammatical_marker(classifier):
    result = classifier.grammatical_marker(WordToClassify(word="de", pos="ADP"))
    assert result.domain_code == "MG"
    assert result.confidence == 1.0
