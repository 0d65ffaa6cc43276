from __future__ import annotations

import json

import pytest

from conftest import fake_openai_client
from homepost.analysis import AnalysisService
from homepost.classifiers import (
    FallbackClassifier,
    KeywordClassifier,
    OpenAIClassifier,
    build_classifier,
    parse_analysis,
)
from homepost.errors import ClassifierError


@pytest.fixture
def keywords() -> KeywordClassifier:
    return KeywordClassifier(["help", "emergency", "fire", "call  the police"])


def test_whole_word_matching(keywords):
    assert [a.phrase for a in keywords.match("Please HELP me")] == ["help"]
    assert keywords.match("that was helpful") == ()
    assert keywords.match("a fireplace") == ()
    assert keywords.match("") == ()


def test_punctuation_is_a_word_boundary(keywords):
    assert [a.phrase for a in keywords.match("Fire! Fire!")] == ["fire"]


def test_multi_word_phrase_is_normalized(keywords):
    assert "call the police" in keywords.phrases
    assert [a.phrase for a in keywords.match("please call the police now")] == ["call the police"]


def test_severity_by_phrase(keywords):
    found = {a.phrase: a.severity for a in keywords.match("help, there is a fire, emergency")}
    assert found == {"help": "medium", "fire": "high", "emergency": "high"}


@pytest.mark.asyncio
async def test_keyword_classification_flags_action(keywords):
    result = await keywords.classify("emergency", "kitchen")
    assert result.action_required is True
    assert result.source == "keyword"


def test_parse_analysis_validates_shape():
    result = parse_analysis(
        {"alerts": [{"phrase": "smoke", "severity": "HIGH"}], "summary": "smoke", "actionRequired": True}
    )
    assert result.alerts[0].severity == "high"
    assert result.action_required is True
    assert result.source == "openai"

    with pytest.raises(ClassifierError):
        parse_analysis([])
    with pytest.raises(ClassifierError):
        parse_analysis({"alerts": [{"phrase": "smoke", "severity": "extreme"}]})
    with pytest.raises(ClassifierError):
        parse_analysis({"alerts": "none"})


@pytest.mark.asyncio
async def test_primary_classifier_used_when_it_answers(keywords):
    reply = json.dumps({"alerts": [{"phrase": "smoke", "severity": "medium"}], "summary": "", "actionRequired": False})
    service = AnalysisService(client=fake_openai_client([reply]))
    classifier = FallbackClassifier(OpenAIClassifier(service), keywords)

    result = await classifier.classify("I smell smoke", "kitchen")

    assert [a.phrase for a in result.alerts] == ["smoke"]
    assert result.source == "openai"
    assert classifier.name == "openai+keyword"


@pytest.mark.asyncio
async def test_falls_back_to_keywords_on_failure(keywords):
    service = AnalysisService(client=fake_openai_client(error=RuntimeError("upstream down")))
    classifier = FallbackClassifier(OpenAIClassifier(service), keywords)

    result = await classifier.classify("help me", "kitchen")

    assert [a.phrase for a in result.alerts] == ["help"]
    assert result.source == "keyword"


@pytest.mark.asyncio
async def test_falls_back_on_unparseable_reply(keywords):
    service = AnalysisService(client=fake_openai_client(["not json"]))
    classifier = FallbackClassifier(OpenAIClassifier(service), keywords)

    result = await classifier.classify("fire", "kitchen")

    assert result.source == "keyword"
    assert result.alerts[0].severity == "high"


def test_build_without_analysis_is_keyword_only():
    classifier = build_classifier(["help"], None)
    assert classifier.primary is None
    assert classifier.name == "keyword"
