from unittest.mock import MagicMock, patch

from annotation_service.engine.cache import AnnotationCache
from annotation_service.engine.external import ExternalAnnotator
from annotation_service.engine.pipeline import AnnotationPipeline, assign_domains
from annotation_service.engine.semantic import SemanticClassifier
from annotation_service.engine.tokenizer import tokenize
from annotation_service.schemas.annotation import AnnotatedToken, AnnotationSource


def test_second_pass_is_served_from_cache(pipeline):
    first = pipeline.annotate("ela canta")
    second = pipeline.annotate("ela canta")

    assert [t.source for t in first] == [AnnotationSource.rule_grammar] * 2
    assert [t.source for t in second] == [AnnotationSource.cache] * 2
    assert [t.lemma for t in second] == ["ela", "cantar"]
    assert [t.confidence for t in second] == [1.0, 1.0]


def test_cache_hit_keeps_current_position(pipeline):
    pipeline.annotate("ela canta")
    tokens = pipeline.annotate("ontem ela canta")

    # 'ela' has a different left neighbour now, 'canta' does not
    assert tokens[1].source == AnnotationSource.rule_grammar
    assert tokens[2].source == AnnotationSource.cache
    assert tokens[2].position == 2


def test_low_confidence_results_are_not_cached(pipeline):
    pipeline.annotate("canção")
    assert pipeline.annotate("canção")[0].source == AnnotationSource.rule_grammar


def test_only_unresolved_tokens_reach_external(storage):
    external = MagicMock()
    external.annotate.side_effect = lambda tokens, text: [
        t.model_copy(update={
            "pos": "ADJ", "pos_detailed": "ADJ",
            "source": AnnotationSource.external_service, "confidence": 0.97,
        })
        for t in tokens
    ]
    cache = AnnotationCache(storage)
    pipeline = AnnotationPipeline(cache, external=external)

    tokens = pipeline.annotate("ela canta xucro")

    external.annotate.assert_called_once()
    batch, text = external.annotate.call_args[0]
    assert [t.surface for t in batch] == ["xucro"]
    assert text == "ela canta xucro"
    assert tokens[2].pos == "ADJ"
    assert tokens[2].position == 2

    # the external answer is now cached for that context
    assert cache.lookup("xucro", "canta", "") is not None


def test_external_not_called_when_everything_resolves(storage):
    external = MagicMock()
    pipeline = AnnotationPipeline(AnnotationCache(storage), external=external)

    pipeline.annotate("ela canta")

    external.annotate.assert_not_called()


def test_window_uses_neighbours_outside_the_window(pipeline):
    text = "ela canta sempre"
    tokens = tokenize(text)

    window = pipeline.annotate_window(tokens, 1, 2, text)

    assert [t.surface for t in window] == ["canta"]
    assert pipeline.cache.lookup("canta", "ela", "sempre") is not None


def test_assign_domains(storage, pipeline, classifier):
    classifier.codes = {"saudade": "SE"}
    tokens = pipeline.annotate("a saudade e a saudade da cuia")

    classified, new, cached = assign_domains(tokens, storage, classifier, "artist-1")

    codes = {t.surface: t.domain_code for t in classified}
    assert codes["a"] == "MG"
    assert codes["e"] == "MG"
    assert codes["saudade"] == "SE"
    assert codes["cuia"] == "NA"
    # both occurrences of 'saudade' are fresh, function words count as known
    assert new + cached == len(tokens)
    assert new == 3
    assert classifier.classified_words == ["saudade", "cuia"]


def test_assign_domains_reuses_known_classifications(storage, pipeline, classifier):
    tokens = pipeline.annotate("cuia e mate")
    assign_domains(tokens, storage, classifier)
    classifier.batches.clear()

    classified, new, cached = assign_domains(tokens, storage, classifier)

    assert new == 0
    assert cached == len(tokens)
    assert classifier.batches == []
    assert storage.get_classifications(["cuia"])["cuia"].domain_code == "NA"


def test_assign_domains_groups_case_variants(storage, classifier):
    tokens = [
        AnnotatedToken(surface=s, lemma=s.lower(), pos="NOUN", pos_detailed="NOUN", position=i,
                       source=AnnotationSource.rule_grammar, confidence=0.85)
        for i, s in enumerate(["Saudade", "saudade"])
    ]

    classified, new, _ = assign_domains(tokens, storage, classifier)

    assert classifier.classified_words == ["saudade"]
    assert new == 2
    assert classified[0].surface == "Saudade"


@patch("annotation_service.engine.external.requests.post")
@patch("annotation_service.engine.external.requests.get")
def test_malformed_external_reply_keeps_grammar_result(mock_get, mock_post, storage):
    mock_get.return_value = MagicMock(json=MagicMock(return_value={"status": "healthy"}))
    mock_post.return_value = MagicMock(json=MagicMock(return_value={"annotations": [{"features": ["x"]}]}))
    external = ExternalAnnotator(base_url="http://nlp.test", retry_attempts=0)
    pipeline = AnnotationPipeline(AnnotationCache(storage), external=external)

    tokens = pipeline.annotate("ela canta xucro")

    assert tokens[2].pos == "UNKNOWN"
    assert tokens[2].source == AnnotationSource.rule_grammar
    mock_post.assert_called_once()


def test_unresolved_tokens_report_the_classifier(storage, pipeline, classifier):
    classifier.codes = {"xucro": "EQ"}
    tokens = pipeline.annotate("ela canta xucro")

    first, _, _ = assign_domains(tokens, storage, classifier)
    second, _, _ = assign_domains(tokens, storage, classifier)

    for classified in (first, second):
        assert classified[1].source == AnnotationSource.rule_grammar
        assert classified[2].source == AnnotationSource.llm_batch
        assert classified[2].confidence == 0.9
        assert classified[2].domain_code == "EQ"


def test_fallback_classification_keeps_token_source(storage, pipeline):
    tokens = pipeline.annotate("ela canta xucro")

    classified, _, _ = assign_domains(tokens, storage, SemanticClassifier(api_url=""))

    assert classified[2].domain_code == "NC"
    assert classified[2].source == AnnotationSource.rule_grammar
    assert classified[2].confidence == 0.0
