"""Intent Classifier implementation.

This service scores a query against a fixed taxonomy of intents and derives
the retrieval parameters (result limit, rerank candidates, similarity floor)
used by the rest of the pipeline. Rules are keyword and regex indicators in
English and Chinese; the scores are computed per intent independently.
"""
import logging
import re
from typing import Dict, List, Optional, Pattern, Sequence, Tuple, Union

from retrieval_services.lexical_index import tokenize
from retrieval_services.models import ConversationTurn, Intent, IntentResult
from retrieval_services.settings import RetrievalSettings

# Configure logging
logger = logging.getLogger(__name__)

KEYWORD_SCORE = 0.3
PATTERN_SCORE = 0.5
CONTEXT_BOOST = 0.2
SUB_INTENT_RATIO = 0.6
FOLLOWUP_MAX_TOKENS = 6

# Tie-break order, highest priority first
INTENT_PRIORITY = [
    Intent.TROUBLESHOOT,
    Intent.PERFORMANCE,
    Intent.BEST_PRACTICE,
    Intent.VERIFICATION,
    Intent.CONFIGURATION,
    Intent.EXPLANATION,
    Intent.COMPARISON,
    Intent.COMMAND,
    Intent.QUESTION,
    Intent.GENERAL,
]

INTENT_RULES = {
    Intent.COMMAND: {
        "keywords": ["how to", "how do", "run", "execute", "show", "display", "list", "get",
                     "command", "执行", "运行", "查询", "nv show"],
        "patterns": [
            r'^(如何|怎么|怎样).*(查询|执行|运行|操作|显示|查看)',
            r'^(nv show|show|display|list|get|run)\s',
            r'\b(which|what) command\b',
        ],
        "weight": 1.2,
    },
    Intent.TROUBLESHOOT: {
        "keywords": ["error", "fail", "failed", "failure", "issue", "problem", "not working", "debug",
                     "broken", "crash", "问题", "错误", "失败", "不工作", "无法", "异常", "调试", "排查",
                     "诊断", "起不来", "启动失败", "报错"],
        "patterns": [
            r'^(为什么|为啥).*(不|无法|失败|错误)',
            r'(出错|报错|异常|故障|起不来|启不动|无法启动|启动失败)',
            r'^(debug|troubleshoot|diagnose)',
            r'\bwhy (is|does|do|did)\b.*\b(not|n\'t|fail)',
            r'\b(doesn\'t|does not|won\'t|can\'t|cannot) (work|start|connect|come up)\b',
        ],
        "weight": 1.3,
    },
    Intent.CONFIGURATION: {
        "keywords": ["configure", "configuration", "setup", "set up", "enable", "disable", "set",
                     "modify", "nv set", "nv config", "配置", "设置", "启用", "禁用", "修改", "更改"],
        "patterns": [
            r'^(配置|设置|启用|禁用|修改|更改)\s*\S+',
            r'^(nv set|nv config)',
            r'^(enable|disable|configure|set up|setup)\s',
            r'\b(how|where)\b.*\b(configure|enable|disable|set up|setup)\b',
            r'(如何|怎么|怎样).*(启用|禁用|配置|设置)',
            r'(启用|禁用).*(如何|怎么|怎样)',
        ],
        "weight": 1.0,
    },
    Intent.EXPLANATION: {
        "keywords": ["what is", "what are", "definition", "explain", "describe", "meaning",
                     "什么是", "定义", "说明", "原理", "解释", "介绍", "详解"],
        "patterns": [
            r'^(什么是|什么叫|定义)',
            r'^(explain|describe|define)\b',
            r'(的原理|的概念|的含义)',
            r'^what (is|are)\b',
        ],
        "weight": 0.9,
    },
    Intent.COMPARISON: {
        "keywords": ["vs", "versus", "difference", "differences", "compare", "comparison",
                     "对比", "区别", "差异", "优缺点", "比较", "相比", "不同"],
        "patterns": [
            r'^(对比|比较|区别).*(和|与|vs)',
            r'\b(vs\.?|versus)\b',
            r'\bdifference between\b',
            r'和.*的区别',
        ],
        "weight": 0.8,
    },
    Intent.PERFORMANCE: {
        "keywords": ["optimize", "optimise", "performance", "tune", "tuning", "improve", "latency",
                     "throughput", "faster", "优化", "性能", "调优", "提升", "加速", "改进", "效率"],
        "patterns": [
            r'^(如何|怎么|怎样).*(优化|提升|改进|加速)',
            r'^(optimize|optimise|tune)\b',
            r'(提升|优化|改进|加速).*(如何|怎么|怎样)',
            r'\bhow (to|do i|can i) (speed up|improve|optimi[sz]e)\b',
        ],
        "weight": 0.9,
    },
    Intent.BEST_PRACTICE: {
        "keywords": ["best practice", "best practices", "recommend", "recommended", "suggest",
                     "should", "推荐", "建议", "标准", "最佳", "最好", "应该"],
        "patterns": [
            r'^(推荐|建议|最佳|标准)',
            r'^(best practice|recommended)',
            r'\bwhat is the (best|recommended) way\b',
        ],
        "weight": 0.85,
    },
    Intent.VERIFICATION: {
        "keywords": ["check", "verify", "validate", "confirm", "status", "show", "display",
                     "检查", "验证", "查看", "显示", "nv show"],
        "patterns": [
            r'^(检查|验证|查看|查询).*(状态|配置|结果|设置)',
            r'^(nv show|check|verify|validate)\b',
            r'^(查看|显示)',
            r'\bhow (to|do i|can i) (check|verify|confirm)\b',
        ],
        "weight": 0.95,
    },
    Intent.QUESTION: {
        "keywords": ["why", "whether", "can", "could", "is it possible", "为什么", "是否", "能否",
                     "可以", "会不会", "吗"],
        "patterns": [
            r'^(为什么|为啥)',
            r'^(是否|能否|可以)',
            r'[吗？?]$',
        ],
        "weight": 0.8,
    },
}

# Signals in recent turns that keep the conversation in one intent
CONTEXT_PATTERNS = [
    (Intent.TROUBLESHOOT, re.compile(r'error|fail|problem|issue|错误|问题|失败', re.IGNORECASE)),
    (Intent.CONFIGURATION, re.compile(r'configur|setup|enable|disable|配置|设置|启用|禁用', re.IGNORECASE)),
    (Intent.EXPLANATION, re.compile(r'\bwhy\b|reason|explain|为什么|原因|解释', re.IGNORECASE)),
    (Intent.PERFORMANCE, re.compile(r'performance|optimi[sz]e|improve|性能|优化|提升', re.IGNORECASE)),
]

REFERENCE_PATTERN = re.compile(
    r'\b(it|its|that|this|those|these|them|they|same)\b|这个|那个|它|上述|上面|刚才', re.IGNORECASE
)

HistoryItem = Union[str, ConversationTurn, Dict[str, str]]


def _keyword_matcher(keyword: str) -> Pattern:
    """ASCII keywords match on word boundaries; CJK keywords match as substrings."""
    if keyword.isascii():
        return re.compile(r'(?<![a-z0-9])' + re.escape(keyword) + r'(?![a-z0-9])')
    return re.compile(re.escape(keyword))


def _compile_rules():
    compiled = {}
    for intent, rule in INTENT_RULES.items():
        compiled[intent] = (
            [(keyword, _keyword_matcher(keyword)) for keyword in rule["keywords"]],
            [re.compile(pattern, re.IGNORECASE) for pattern in rule["patterns"]],
            rule["weight"],
        )
    return compiled


COMPILED_RULES = _compile_rules()


def normalize_history(history: Optional[Sequence[HistoryItem]], max_turns: int) -> List[ConversationTurn]:
    """Coerce raw history items into turns and keep the most recent ``max_turns``."""
    turns = []
    for item in history or []:
        if isinstance(item, ConversationTurn):
            turns.append(item)
        elif isinstance(item, dict):
            turns.append(ConversationTurn(role=item.get("role", "user"), content=item.get("content", "")))
        else:
            turns.append(ConversationTurn(content=str(item)))
    return turns[-max_turns:] if max_turns > 0 else []


class IntentClassifier:
    """Rule-based classifier over the ten-intent taxonomy."""

    def __init__(self, settings: Optional[RetrievalSettings] = None):
        self.settings = settings or RetrievalSettings()

    def score_intents(self, query: str) -> Tuple[Dict[Intent, float], Dict[Intent, List[str]]]:
        """Score every intent independently.

        Returns:
            Tuple of (scores for intents with a non-zero score, matched signals per intent)
        """
        text = query.strip().lower()
        scores: Dict[Intent, float] = {}
        reasons: Dict[Intent, List[str]] = {}

        for intent, (keywords, patterns, weight) in COMPILED_RULES.items():
            matched_keywords = [keyword for keyword, matcher in keywords if matcher.search(text)]
            matched_patterns = [pattern.pattern for pattern in patterns if pattern.search(text)]
            score = (len(matched_keywords) * KEYWORD_SCORE + len(matched_patterns) * PATTERN_SCORE) * weight
            if score > 0:
                scores[intent] = score
                signals = []
                if matched_keywords:
                    signals.append(f"keywords: {', '.join(matched_keywords)}")
                if matched_patterns:
                    signals.append(f"patterns matched: {len(matched_patterns)}")
                reasons[intent] = signals
        return scores, reasons

    def detect_context_intent(self, turns: Sequence[ConversationTurn]) -> Optional[Intent]:
        """Intent implied by the last two turns of the conversation, if any."""
        recent = " ".join(turn.content for turn in turns[-2:])
        for intent, pattern in CONTEXT_PATTERNS:
            if pattern.search(recent):
                return intent
        return None

    @staticmethod
    def is_followup(query: str) -> bool:
        """Short queries that point back at an earlier turn ("what about it?")."""
        return bool(REFERENCE_PATTERN.search(query)) and len(tokenize(query)) <= FOLLOWUP_MAX_TOKENS

    @staticmethod
    def _previous_user_turn(turns: Sequence[ConversationTurn]) -> Optional[ConversationTurn]:
        for turn in reversed(turns):
            if turn.role == "user" and turn.content.strip():
                return turn
        return None

    def classify(self, query: str, history: Optional[Sequence[HistoryItem]] = None) -> IntentResult:
        """Classify a query, optionally using recent conversation turns.

        Args:
            query: Query text
            history: Most recent turns, oldest first

        Returns:
            IntentResult; ``general`` when no rule fires
        """
        turns = normalize_history(history, self.settings.history_turns)
        scores, reasons = self.score_intents(query)

        if turns and scores:
            context_intent = self.detect_context_intent(turns)
            if context_intent in scores:
                scores[context_intent] += CONTEXT_BOOST
                reasons[context_intent].append("conversation context")

        if not scores:
            previous = self._previous_user_turn(turns)
            if previous is not None and self.is_followup(query):
                inherited = self.classify(previous.content)
                if inherited.intent != Intent.GENERAL:
                    confidence = inherited.confidence * self.settings.followup_confidence_factor
                    logger.debug(f"Follow-up '{query}' inherits intent {inherited.intent.value}")
                    return IntentResult(
                        intent=inherited.intent,
                        confidence=round(confidence, 4),
                        reasons=["inherited from previous turn"] + inherited.reasons,
                        params=self.settings.params_for(inherited.intent),
                        scores=inherited.scores,
                    )

            return IntentResult(
                intent=Intent.GENERAL,
                confidence=self.settings.default_confidence,
                reasons=["no specific intent detected"],
                params=self.settings.params_for(Intent.GENERAL),
            )

        ranked = sorted(scores.items(), key=lambda item: (-item[1], INTENT_PRIORITY.index(item[0])))
        top_intent, top_score = ranked[0]
        confidence = top_score / sum(scores.values())
        sub_intents = [
            intent for intent, score in ranked[1:3]
            if score > top_score * SUB_INTENT_RATIO
        ]

        result = IntentResult(
            intent=top_intent,
            confidence=round(min(1.0, confidence), 4),
            reasons=reasons[top_intent],
            params=self.settings.params_for(top_intent),
            scores={intent.value: round(score, 4) for intent, score in ranked},
            sub_intents=sub_intents,
        )
        logger.debug(f"Classified '{query[:60]}' as {result.intent.value} ({result.confidence:.2f})")
        return result

    def build_retrieval_query(self, query: str, history: Optional[Sequence[HistoryItem]] = None) -> str:
        """Expand a referential follow-up with the previous user turn.

        "how do I enable it" on its own gives the lexical and vector legs
        nothing to match; prefixing the earlier question restores the referent.
        """
        turns = normalize_history(history, self.settings.history_turns)
        previous = self._previous_user_turn(turns)
        if previous is None or not self.is_followup(query):
            return query
        if previous.content.strip() == query.strip():
            return query
        return f"{previous.content.strip()} {query.strip()}"
