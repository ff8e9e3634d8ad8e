#!/usr/bin/env python3
"""
Tests for intent classification and follow-up handling.
"""

import os
import sys

# Add the parent directory to the path so we can import the modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from retrieval_services.intent_classifier import IntentClassifier, normalize_history
from retrieval_services.models import ConversationTurn, Intent
from retrieval_services.settings import RetrievalSettings


def test_configuration_query():
    result = IntentClassifier().classify("how do I configure BGP")

    assert result.intent in (Intent.CONFIGURATION, Intent.COMMAND)
    assert result.confidence > 0.5
    assert result.params.min_score == 0.28


def test_chinese_configuration_query():
    result = IntentClassifier().classify("如何配置BGP")
    assert result.intent == Intent.CONFIGURATION
    assert result.confidence == 1.0


def test_troubleshoot_query():
    result = IntentClassifier().classify("BGP session error after upgrade, neighbor not working")
    assert result.intent == Intent.TROUBLESHOOT
    assert result.params.limit == 25
    assert any("error" in reason for reason in result.reasons)


def test_no_signal_is_general():
    result = IntentClassifier().classify("swp51 uplink")
    assert result.intent == Intent.GENERAL
    assert result.confidence == 0.5
    assert result.params == RetrievalSettings().params_for(Intent.GENERAL)


def test_scores_and_sub_intents():
    result = IntentClassifier().classify("how do I configure BGP")
    assert result.scores["configuration"] > result.scores["command"]
    assert Intent.COMMAND not in result.sub_intents, "Command scores below 60% of the top intent"


def test_ascii_keywords_need_word_boundaries():
    scores, _ = IntentClassifier().score_intents("settings of the reset button")
    assert Intent.CONFIGURATION not in scores, "'set' must not match inside 'settings' or 'reset'"


def test_followup_inherits_previous_intent():
    classifier = IntentClassifier()
    history = [ConversationTurn(role="user", content="how do I configure BGP")]
    previous = classifier.classify("how do I configure BGP")
    result = classifier.classify("what about it", history)

    assert result.intent == previous.intent
    assert result.confidence == round(previous.confidence * 0.7, 4)
    assert result.reasons[0] == "inherited from previous turn"


def test_context_boost_from_history():
    classifier = IntentClassifier()
    plain = classifier.classify("how do I configure BGP")
    boosted = classifier.classify("how do I configure BGP", ["enable ospf on swp1"])

    assert boosted.scores["configuration"] == round(plain.scores["configuration"] + 0.2, 4)
    assert "conversation context" in boosted.reasons


def test_build_retrieval_query_expands_followups():
    classifier = IntentClassifier()
    history = [{"role": "user", "content": "How do I configure BGP?"},
               {"role": "assistant", "content": "Use nv set."}]

    assert classifier.build_retrieval_query("how do I verify it", history) == "How do I configure BGP? how do I verify it"
    assert classifier.build_retrieval_query("show ospf routes", history) == "show ospf routes"
    assert classifier.build_retrieval_query("what about it", None) == "what about it"


def test_normalize_history_keeps_recent_turns():
    turns = normalize_history([f"turn {i}" for i in range(10)], max_turns=6)
    assert len(turns) == 6
    assert turns[0].content == "turn 4"
    assert turns[-1].role == "user"
