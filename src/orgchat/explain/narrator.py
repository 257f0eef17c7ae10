"""Response synthesis: turn outcomes into conversational replies.

Replies are built from templates so that every turn gets a sensible answer
without a language model. When ``use_llm_narration`` is enabled, successful
data turns are phrased by the narrator model instead, with the template reply
as the fallback on any model failure.

Narration Rules:
- Data replies state how many records were found, for which object, and which
  function (and suggestion pattern) produced them
- Zero results are said explicitly
- Failures apologize without technical detail; the detail stays in the Turn
- Smalltalk and recall replies use prior history only, never new data
"""

import json
import logging
from typing import Any, Callable

from orgchat.agents.contracts import DispatchOutcome, Intent, Operation, Turn
from orgchat.config import AgentConfig
from orgchat.llm.router import call_llm, parse_json_response
from orgchat.planning.intent import GREETING_RE, HELP_RE, THANKS_RE


logger = logging.getLogger(__name__)

APOLOGY = "I apologize, but I encountered an error processing your request."
LOW_CONFIDENCE_HEDGE = "I wasn't completely sure what you meant, so I went with my best guess."

ERROR_HINTS = {
    "capability_timeout": "The data service took too long to respond. Please try again in a moment.",
    "capability_unavailable": "I couldn't get an answer from the data service right now. Please try again shortly.",
    "schema_mismatch": "I couldn't find any fields I'm allowed to query on {object}. It may not be set up yet.",
}
DEFAULT_ERROR_HINT = "Please try rephrasing your question."

PREVIEW_RECORDS = 3
PREVIEW_FIELDS = 3
RECALL_TURNS = 5
LABEL_FIELDS = ("Name", "Subject", "Title", "CaseNumber", "Id")


NARRATOR_SYSTEM_PROMPT = """You are a CRM data assistant. Present query results to a business user in two to five short sentences.

You MUST:
- Start with the number of records found and what they are
- Describe ONLY what exists in the results (no speculation, no invented data)
- Format large numbers with commas
- No query syntax, no field API names unless the user used them
- Output ONLY valid JSON: {"text": "<reply>"}"""

NARRATOR_USER_PROMPT_TEMPLATE = """User question: {question}

Function used: {function}
Draft reply: {draft}

Result summary:
{summary}

Rewrite the draft reply so it reads naturally. Keep every number.

Output format (JSON only):
{{
  "text": "<reply>"
}}"""


# =============================================================================
# Formatting helpers
# =============================================================================

def _fmt_number(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, int):
        return f"{value:,}"
    if isinstance(value, float):
        return f"{value:,.0f}" if value.is_integer() else f"{value:,.2f}"
    return str(value)


def _plural(count: int, noun: str) -> str:
    return f"{count:,} {noun} record" + ("" if count == 1 else "s")


def _record_label(record: dict[str, Any]) -> str:
    for name in LABEL_FIELDS:
        if record.get(name):
            return str(record[name])
    return "(unnamed)"


def _record_preview(record: dict[str, Any], fields: list[str]) -> str:
    label = _record_label(record)
    details = []
    for name in fields:
        if name in LABEL_FIELDS or name == "attributes":
            continue
        value = record.get(name)
        if value is None or value == "":
            continue
        details.append(f"{name}: {_fmt_number(value)}")
        if len(details) >= PREVIEW_FIELDS:
            break
    return f"- {label}" + (f" ({', '.join(details)})" if details else "")


def _describe_turn(turn: Turn) -> str:
    said = turn.utterance.text.strip() or "(nothing)"
    if turn.error is not None:
        outcome = "but I ran into a problem answering"
    elif turn.function_called:
        count = (turn.function_result or {}).get("recordCount")
        noun = turn.intent.target_object
        if turn.function_called in ("get_object_insights", "get_top_fields"):
            outcome = f"and I described the {noun} schema"
        elif count is not None:
            outcome = f"and I found {_plural(int(count), noun)}"
        else:
            outcome = f"and I looked up {noun} data"
    else:
        outcome = "and we chatted"
    return f'You said "{said}" {outcome}.'


# =============================================================================
# Synthesizer
# =============================================================================

class ResponseSynthesizer:
    """Produce the reply text for a turn.

    Usage:
        narrator = ResponseSynthesizer(config)
        reply = narrator.synthesize(intent, outcome, history)
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        *,
        llm: Callable[..., str] | None = None,
    ):
        self.config = config or AgentConfig()
        self.llm = llm or call_llm

    def synthesize(self, intent: Intent, outcome: DispatchOutcome, history: list[Turn]) -> str:
        """Build the reply.

        Args:
            intent: The turn's intent
            outcome: Dispatch outcome (empty for smalltalk and recall)
            history: Turns before this one, oldest first

        Returns:
            Non-empty reply text
        """
        if outcome.error is not None:
            reply = self._failure(intent, outcome)
        elif intent.operation == Operation.SMALLTALK:
            reply = self._smalltalk(intent, history)
        elif intent.operation == Operation.RECALL_MEMORY:
            reply = self._recall(history)
        else:
            reply = self._data(intent, outcome)
            if self.config.use_llm_narration:
                reply = self._narrate(intent, outcome, reply)

        if intent.low_confidence and outcome.error is None:
            reply = f"{LOW_CONFIDENCE_HEDGE} {reply}"
        return reply.strip() or APOLOGY

    # -------------------------------------------------------------------------
    # Non-data replies
    # -------------------------------------------------------------------------

    def _smalltalk(self, intent: Intent, history: list[Turn]) -> str:
        text = intent.query_text
        if THANKS_RE.search(text) and not GREETING_RE.search(text):
            return "You're welcome! Let me know if there's anything else you'd like to look up."

        lines = []
        if GREETING_RE.search(text) or not text:
            lines.append(f"Hi! I'm {self.config.agent_name}.")
        if HELP_RE.search(text) or not history:
            lines.append(
                "I can help you explore your CRM data. Try asking me to:\n"
                "- List records: \"show me recent opportunities\"\n"
                "- Summarize them: \"how many open cases by status?\"\n"
                "- Describe an object: \"what fields does Account have?\"\n"
                "- Recall our conversation: \"what did we just discuss?\""
            )
        objects = [t.intent.target_object for t in history if t.function_called]
        if objects:
            recent = list(dict.fromkeys(reversed(objects)))[:3]
            lines.append(f"So far we've looked at {', '.join(recent)} data.")
        if not lines:
            lines.append(f"I'm {self.config.agent_name}. What would you like to know about your data?")
        return "\n".join(lines)

    def _recall(self, history: list[Turn]) -> str:
        if not history:
            return "We haven't discussed anything yet in this conversation. Ask me about your records to get started."
        recent = history[-RECALL_TURNS:]
        header = f"Here's what we've covered ({len(history)} message{'s' if len(history) != 1 else ''} so far):"
        body = [f"{i}. {_describe_turn(turn)}" for i, turn in enumerate(recent, 1)]
        if len(history) > len(recent):
            body.insert(0, f"(showing the last {len(recent)})")
        return "\n".join([header, *body])

    def _failure(self, intent: Intent, outcome: DispatchOutcome) -> str:
        code = outcome.error.code if outcome.error else ""
        hint = ERROR_HINTS.get(code, DEFAULT_ERROR_HINT).format(object=intent.target_object)
        return f"{APOLOGY} {hint}"

    # -------------------------------------------------------------------------
    # Data replies
    # -------------------------------------------------------------------------

    def _data(self, intent: Intent, outcome: DispatchOutcome) -> str:
        result = outcome.function_result or {}
        function = outcome.function_called or ""
        if function == "get_top_fields":
            return self._top_fields(intent, result)
        if function == "get_object_insights":
            return self._insights(intent, result)
        if function == "analyze_records":
            return self._aggregate(intent, result, function)
        return self._records(intent, result, function)

    def _source(self, function: str, result: dict[str, Any]) -> str:
        source = f"using {function}"
        if result.get("suggestion"):
            source += f' with the "{result["suggestion"]}" pattern'
        return source

    def _records(self, intent: Intent, result: dict[str, Any], function: str) -> str:
        records = result.get("records") or []
        count = int(result.get("recordCount", len(records)) or 0)
        obj = intent.target_object
        if count == 0:
            return f"I didn't find any {obj} records matching your request ({self._source(function, result)})."

        total = int(result.get("totalSize", count) or count)
        line = f"I found {_plural(count, obj)}"
        if total > count:
            line += f" (showing {count:,} of {total:,})"
        line += f" {self._source(function, result)}:"
        fields = list(result.get("fields") or [])
        preview = [_record_preview(r, fields) for r in records[:PREVIEW_RECORDS]]
        if count > PREVIEW_RECORDS:
            preview.append(f"...and {count - PREVIEW_RECORDS:,} more.")
        return "\n".join([line, *preview])

    def _aggregate(self, intent: Intent, result: dict[str, Any], function: str) -> str:
        count = int(result.get("recordCount", 0) or 0)
        obj = intent.target_object
        if count == 0:
            return f"I didn't find any {obj} records to analyze ({self._source(function, result)})."

        lines = [f"I analyzed {_plural(count, obj)} {self._source(function, result)}."]
        if result.get("sampled"):
            lines.append(f"That is a sample of {int(result.get('totalSize', count)):,} matching records.")

        for name, stats in list((result.get("numeric") or {}).items())[:PREVIEW_FIELDS]:
            lines.append(
                f"{name}: total {_fmt_number(stats['sum'])}, average {_fmt_number(stats['avg'])} "
                f"(min {_fmt_number(stats['min'])}, max {_fmt_number(stats['max'])})."
            )

        groups = result.get("groups") or []
        if groups:
            parts = ", ".join(f"{g['value']} ({g['count']:,})" for g in groups)
            lines.append(f"By {result.get('groupBy')}: {parts}.")

        performance = result.get("performance")
        if performance:
            if performance.get("winRate") is not None:
                lines.append(
                    f"Win rate: {performance['winRate']:.1f}% "
                    f"({performance['closedWon']:,} won, {performance['closedLost']:,} lost)."
                )
            if performance.get("pipelineCount"):
                lines.append(f"Open pipeline: {performance['pipelineCount']:,} deals.")
        return "\n".join(lines)

    def _insights(self, intent: Intent, result: dict[str, Any]) -> str:
        obj = intent.target_object
        lines = [f"{obj} has {int(result.get('fieldCount') or 0):,} fields."]
        if result.get("recordTypes"):
            lines.append(f"Record types: {', '.join(result['recordTypes'])}.")
        fields = result.get("topFields") or result.get("defaultFields") or []
        if fields:
            lines.append(f"Commonly used fields: {', '.join(fields[:8])}.")
        if result.get("suggestions"):
            lines.append(f"You could try: {'; '.join(result['suggestions'][:3])}.")
        return " ".join(lines)

    def _top_fields(self, intent: Intent, result: dict[str, Any]) -> str:
        fields = result.get("topFields") or []
        if not fields:
            return f"I don't have field usage data for {intent.target_object} yet."
        parts = ", ".join(
            f"{f['field']} ({f['count']:,})" if f.get("count") else f["field"]
            for f in fields
        )
        return f"The most used {intent.target_object} fields are: {parts}."

    # -------------------------------------------------------------------------
    # Model narration
    # -------------------------------------------------------------------------

    def _narrate(self, intent: Intent, outcome: DispatchOutcome, draft: str) -> str:
        summary = {k: v for k, v in (outcome.function_result or {}).items() if k != "records"}
        records = (outcome.function_result or {}).get("records") or []
        if records:
            summary["sampleRecords"] = records[:PREVIEW_RECORDS]
        messages = [
            {"role": "system", "content": NARRATOR_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": NARRATOR_USER_PROMPT_TEMPLATE.format(
                    question=intent.query_text,
                    function=outcome.function_called,
                    draft=draft,
                    summary=json.dumps(summary, default=str)[:4000],
                ),
            },
        ]
        try:
            response = self.llm(
                messages,
                role="narrator",
                provider=self.config.llm_provider,
                model=self.config.llm_model_overrides.get("narrator"),
                timeout=int(self.config.capability_timeout),
            )
            text = str(parse_json_response(response).get("text") or "").strip()
        except Exception as e:
            logger.warning("Narration failed, using template reply: %s", e)
            return draft
        return text or draft
