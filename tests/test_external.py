from unittest.mock import MagicMock, patch

import pytest
import requests

from annotation_service.engine.external import ExternalAnnotator
from annotation_service.schemas.annotation import AnnotatedToken, AnnotationSource


def unknown(surface, position):
    return AnnotatedToken(
        surface=surface,
        lemma=surface,
        pos="UNKNOWN",
        pos_detailed="UNKNOWN",
        position=position,
        source=AnnotationSource.rule_grammar,
        confidence=0.0,
    )


def response(payload):
    mock = MagicMock()
    mock.json.return_value = payload
    mock.raise_for_status.return_value = None
    return mock


HEALTHY = response({"status": "healthy", "model": "pt_core_news_lg"})


def make_annotator(sleep=None):
    return ExternalAnnotator(
        base_url="http://nlp.test/",
        retry_attempts=1,
        retry_backoff=0.5,
        sleep=sleep or MagicMock(),
    )


def test_unconfigured_returns_input():
    annotator = ExternalAnnotator(base_url="")
    tokens = [unknown("xucro", 0)]

    with patch("annotation_service.engine.external.requests.post") as mock_post:
        assert annotator.annotate(tokens, "xucro") == tokens
        mock_post.assert_not_called()


@patch("annotation_service.engine.external.requests.post")
@patch("annotation_service.engine.external.requests.get")
def test_unhealthy_service_is_skipped(mock_get, mock_post):
    """A failing health probe skips the batch without an annotate call"""
    mock_get.side_effect = requests.ConnectionError("refused")
    tokens = [unknown("xucro", 0)]

    assert make_annotator().annotate(tokens, "xucro") == tokens
    mock_post.assert_not_called()


@patch("annotation_service.engine.external.requests.post")
@patch("annotation_service.engine.external.requests.get")
def test_successful_annotation_is_merged(mock_get, mock_post):
    mock_get.return_value = HEALTHY
    mock_post.return_value = response({
        "annotations": [
            {"word": "xucro", "lemma": "xucro", "pos": "ADJ", "posDetailed": "ADJ",
             "features": {"gender": "Masc"}, "confidence": 0.97},
            {"word": "guaipeca", "lemma": "guaipeca", "pos": "NOUN", "confidence": 0.8},
        ]
    })
    tokens = [unknown("xucro", 2), unknown("guaipeca", 5)]

    result = make_annotator().annotate(tokens, "um cavalo xucro e um guaipeca")

    assert [t.surface for t in result] == ["xucro", "guaipeca"]
    assert [t.position for t in result] == [2, 5]
    assert result[0].pos == "ADJ"
    assert result[0].features == {"gender": "Masc"}
    assert result[0].confidence == 0.97
    assert result[1].pos_detailed == "NOUN"
    assert all(t.source == AnnotationSource.external_service for t in result)

    mock_get.assert_called_once_with("http://nlp.test/health", timeout=2.0)
    args, kwargs = mock_post.call_args
    assert args[0] == "http://nlp.test/annotate"
    assert kwargs["json"] == {"tokens": ["xucro", "guaipeca"], "fullText": "um cavalo xucro e um guaipeca"}


@patch("annotation_service.engine.external.requests.post")
@patch("annotation_service.engine.external.requests.get")
def test_retries_then_degrades(mock_get, mock_post):
    """Two timeouts: one retry with backoff, then the input comes back unchanged"""
    mock_get.return_value = HEALTHY
    mock_post.side_effect = requests.Timeout("slow")
    sleep = MagicMock()
    tokens = [unknown("xucro", 0)]

    result = make_annotator(sleep).annotate(tokens, "xucro")

    assert result == tokens
    assert mock_post.call_count == 2
    sleep.assert_called_once_with(0.5)


@patch("annotation_service.engine.external.requests.post")
@patch("annotation_service.engine.external.requests.get")
def test_retry_recovers(mock_get, mock_post):
    mock_get.return_value = HEALTHY
    mock_post.side_effect = [
        requests.ConnectionError("reset"),
        response({"annotations": [{"lemma": "xucro", "pos": "ADJ", "confidence": 0.9}]}),
    ]

    result = make_annotator().annotate([unknown("xucro", 0)], "xucro")

    assert result[0].pos == "ADJ"
    assert result[0].source == AnnotationSource.external_service


@patch("annotation_service.engine.external.requests.post")
@patch("annotation_service.engine.external.requests.get")
def test_length_mismatch_is_rejected(mock_get, mock_post):
    mock_get.return_value = HEALTHY
    mock_post.return_value = response({"annotations": []})
    tokens = [unknown("xucro", 0)]

    assert make_annotator().annotate(tokens, "xucro") == tokens


@patch("annotation_service.engine.external.requests.get")
def test_check_health_reports_bad_status(mock_get):
    mock_get.return_value = response({"status": "loading"})

    health = make_annotator().check_health()

    assert health["healthy"] is False


@pytest.mark.parametrize("payload", [
    {"annotations": ["NOUN"]},
    {"annotations": [{"pos": "NOUN", "features": ["x"]}]},
    {"annotations": "NOUN"},
    ["NOUN"],
])
@patch("annotation_service.engine.external.requests.post")
@patch("annotation_service.engine.external.requests.get")
def test_malformed_reply_keeps_input(mock_get, mock_post, payload):
    """A reply of the wrong shape degrades to the input instead of raising"""
    mock_get.return_value = HEALTHY
    mock_post.return_value = response(payload)
    tokens = [unknown("xucro", 0)]

    assert make_annotator().annotate(tokens, "xucro") == tokens
    assert mock_post.call_count == 2
