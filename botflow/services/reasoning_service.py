"""
Goal reasoning service.

Stateless prompt templates over LLMClient: goal evaluation, response
generation, structured extraction and condition classification. Callers
pass the whole conversation every time.
"""
import json
import re
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, field_validator

from botflow.core.config import settings
from botflow.core.exceptions import ConfigurationError
from botflow.services.llm import LLMClient


DATA_PATTERNS = {
    "email": re.compile(r"[\w.-]+@[\w.-]+\.\w+"),
    "phone": re.compile(r"[\d\s\-\(\)]+\d{4,}"),
    "date": re.compile(r"\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|\d{4}[/-]\d{1,2}[/-]\d{1,2}"),
    "time": re.compile(r"\d{1,2}:\d{2}\s*(am|pm|AM|PM)?"),
    "number": re.compile(r"\d+"),
}


class GoalEvaluation(BaseModel):
    """Structured verdict returned by evaluate_goal (camelCase on the wire)."""
    achieved: bool = False
    confidence: int = 0
    reasoning: str = ""
    selected_outcome: str | None = Field(None, alias="selectedOutcome")
    suggested_response: str | None = Field(None, alias="suggestedResponse")
    extracted_data: dict[str, Any] = Field(default_factory=dict, alias="extractedData")

    class Config:
        populate_by_name = True

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value):
        try:
            value = int(round(float(value)))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, value))

    @field_validator("achieved", mode="before")
    @classmethod
    def coerce_achieved(cls, value):
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)

    @field_validator("extracted_data", mode="before")
    @classmethod
    def coerce_extracted(cls, value):
        return value if isinstance(value, dict) else {}

    @field_validator("reasoning", mode="before")
    @classmethod
    def coerce_reasoning(cls, value):
        return "" if value is None else str(value)


def _bullets(items) -> str:
    return "\n".join(f"- {item}" for item in (items or []))


def build_business_context_prompt(business_context: dict | None, task_prompt: str) -> str:
    """
    Wrap a task prompt with the bot's business persona.

    Returns the task prompt untouched when no persona is configured.
    """
    if not business_context:
        return task_prompt

    bc = business_context
    sections = [
        "## Business Context",
        f"You are an AI assistant representing {bc.get('business_name') or 'this business'}.",
        f"Business Type: {bc.get('business_type') or 'General'}",
        f"Industry: {bc.get('industry') or 'General'}",
        "",
        "## Communication Style",
        f"- Tone: {bc.get('tone_of_voice') or 'professional'}",
        f"- Language: {bc.get('language_style') or 'conversational'}",
        "",
        "## About the Business",
        bc.get("unique_value_proposition") or "",
        f"Target Audience: {bc.get('target_audience') or 'General customers'}",
        f"Services: {', '.join(bc.get('services_offered') or [])}",
        "",
        "## Response Guidelines",
        _bullets(bc.get("response_guidelines")),
        "",
        "## Topics to Avoid",
        _bullets(bc.get("prohibited_topics")),
        "",
        "## Escalation Triggers (hand off to human for these)",
        _bullets(bc.get("escalation_triggers")),
    ]
    if bc.get("bot_context"):
        sections += ["", "## Bot Instructions", bc["bot_context"]]
    if bc.get("custom_instructions"):
        sections += ["", "## Additional Instructions", bc["custom_instructions"]]
    sections += ["", "## Current Task", task_prompt]

    return "\n".join(sections)


class ReasoningService:
    """
    LLM-backed reasoning used by node handlers and the booking module.

    Provider failures propagate as ReasoningError. Malformed JSON from
    JSON-mode calls degrades to an empty / negative result instead.
    """

    def __init__(self, llm: LLMClient | None, model: str | None = None, fast_model: str | None = None):
        self._llm = llm
        self.model = model or settings.OPENAI_MODEL
        self.fast_model = fast_model or settings.OPENAI_FAST_MODEL

    @property
    def is_configured(self) -> bool:
        return self._llm is not None

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            raise ConfigurationError("No LLM credential configured for this organization")
        return self._llm

    # ============== Goal evaluation ==============

    async def evaluate_goal(
        self,
        goal: str,
        possible_outcomes: list[str],
        user_message: str,
        conversation_history: list[dict],
        business_context: dict | None = None,
        session_data: dict | None = None,
    ) -> GoalEvaluation:
        """
        Decide whether the milestone goal has been reached.

        Args:
            goal: Natural-language goal of the milestone node
            possible_outcomes: Outcomes the evaluator may select from
            user_message: The latest user message
            conversation_history: Prior turns, oldest first (without user_message)
            business_context: Bot persona, summarized into the CONTEXT line
            session_data: Current session variables

        Returns:
            GoalEvaluation; malformed model output yields achieved=False, confidence=0
        """
        system_prompt = self._goal_evaluation_prompt(goal, possible_outcomes, business_context, session_data)
        transcript = self._format_transcript(conversation_history)
        user_prompt = f"{transcript}\n\nLATEST USER MESSAGE:\n{user_message}" if transcript else user_message

        raw = await self.llm.extract_json_from_llm(
            system_prompt,
            user_prompt,
            temperature=0.3,
            max_tokens=1000,
            model=self.model,
        )
        try:
            evaluation = GoalEvaluation.model_validate(raw)
        except ValueError:
            logger.warning(f"Discarding unusable goal evaluation: {raw!r}")
            evaluation = GoalEvaluation()

        if not raw:
            evaluation.reasoning = "Evaluator returned no usable result"
        return evaluation

    def _goal_evaluation_prompt(
        self,
        goal: str,
        possible_outcomes: list[str],
        business_context: dict | None,
        session_data: dict | None,
    ) -> str:
        outcomes = "\n".join(f"{i + 1}. {o}" for i, o in enumerate(possible_outcomes or []))
        context_line = ""
        if business_context:
            summary = business_context.get("bot_context") or business_context.get("business_name")
            if summary:
                context_line = f"CONTEXT: {summary}\n\n"
        session_line = ""
        if session_data:
            session_line = f"KNOWN DATA: {json.dumps(session_data, default=str)}\n\n"

        return f"""You are an AI assistant evaluating whether a conversation goal has been achieved.

GOAL: {goal}

POSSIBLE OUTCOMES:
{outcomes or "(none specified)"}

{context_line}{session_line}Your task is to analyze the conversation and the latest user message to determine:
1. Has the goal been achieved?
2. If yes, which specific outcome was reached?
3. Your confidence level (0-100)
4. Your reasoning for this evaluation
5. Any relevant data extracted from the conversation
6. A suggested response for the bot

Consider the full conversation context and look for:
- Explicit confirmations or agreements
- Implicit acceptance through providing requested information
- Clear rejections or refusals
- Requests for more information (goal not yet achieved)
- Off-topic responses (goal not achieved)

Return your evaluation as a JSON object with the following structure:
{{
  "achieved": boolean,
  "confidence": number (0-100),
  "reasoning": "string explaining your evaluation",
  "selectedOutcome": "string (one of the possible outcomes, if achieved)",
  "suggestedResponse": "string (what the bot should say next)",
  "extractedData": {{ "key": "value" }} (any relevant data from the conversation)
}}"""

    # ============== Free-text generation ==============

    async def generate_response(
        self,
        node,
        conversation_history: list[dict],
        business_context: dict | None = None,
        session_data: dict | None = None,
        message_text: str | None = None,
    ) -> str:
        """
        Generate the bot's next line for the given node.

        ``message_text`` is the message node's content with variables already
        filled in; it replaces the raw template from the node config.
        """
        task = self._node_task_prompt(node, message_text)
        if session_data:
            task += f"\n\nSession context: {json.dumps(session_data, default=str)}"
        task += "\n\nGenerate a natural, conversational response that moves the conversation forward."

        system_prompt = build_business_context_prompt(
            business_context,
            f"You are an AI assistant in a conversation workflow.\n\n{task}",
        )
        response = await self.llm.call_llm_with_history(
            system_prompt,
            conversation_history,
            temperature=0.7,
            max_tokens=500,
            model=self.model,
        )
        return response.strip() or "I understand. How can I help you further?"

    def _node_task_prompt(self, node, message_text: str | None = None) -> str:
        config = node.config or {}

        if node.type == "milestone":
            prompt = (
                f"You are at a milestone node trying to achieve: {node.goal_description or node.description or ''}\n"
                "Guide the conversation naturally toward this goal while being helpful and conversational."
            )
            if config.get("extra_instructions"):
                prompt += f"\nAdditional context: {config['extra_instructions']}"
            return prompt

        if node.type in ("appointment", "book_appointment"):
            calendars = ", ".join(node.calendar_ids) or config.get("calendar_name") or "General calendar"
            return (
                f"You are helping to book an appointment. Available calendars: {calendars}\n"
                "Help the user schedule a convenient time while gathering necessary information."
            )

        if node.type == "message":
            content = message_text if message_text is not None else (
                config.get("message") or config.get("content") or node.description or ""
            )
            return (
                f"Deliver this message naturally: {content}\n"
                "Do not repeat it verbatim. Respond naturally, making it conversational "
                "and appropriate to the context."
            )

        return "Continue the conversation naturally while being helpful and staying on topic."

    async def generate_text(
        self,
        system_prompt: str,
        conversation_history: list[dict],
        temperature: float = 0.7,
        max_tokens: int = 500,
        model: str | None = None,
        business_context: dict | None = None,
    ) -> str:
        """Free-form completion for AI nodes with an author-supplied prompt."""
        prompt = build_business_context_prompt(business_context, system_prompt)
        response = await self.llm.call_llm_with_history(
            prompt,
            conversation_history,
            temperature=temperature,
            max_tokens=max_tokens,
            model=model or self.fast_model,
        )
        return response.strip()

    # ============== Structured extraction ==============

    async def extract_data(
        self,
        user_message: str,
        schema: dict,
        conversation_history: list[dict] | None = None,
    ) -> dict:
        """Pull the fields described by ``schema`` out of the conversation. Missing fields are null."""
        system_prompt = f"""You are a data extraction assistant. Extract the following information from the user's message and conversation history:

{json.dumps(schema, indent=2)}

Return the extracted data as a JSON object matching the schema. If a field cannot be extracted, set it to null."""

        transcript = self._format_transcript(conversation_history or [])
        user_prompt = f"{transcript}\n\nLATEST USER MESSAGE:\n{user_message}" if transcript else user_message

        return await self.llm.extract_json_from_llm(
            system_prompt,
            user_prompt,
            temperature=0.1,
            model=self.model,
        )

    # ============== Classification ==============

    async def evaluate_condition(
        self,
        condition: dict,
        user_message: str,
        conversation_history: list[dict] | None = None,
        session_data: dict | None = None,
    ) -> bool:
        """
        Evaluate one typed condition attached to a condition-node edge.

        Supported types: contains_keyword, sentiment_analysis, intent_matching,
        data_extraction, custom_logic, session_variable, regex_match.
        Unknown types evaluate to False.
        """
        session_data = session_data or {}
        condition_type = condition.get("type")

        if condition_type == "contains_keyword":
            lowered = user_message.lower()
            return any(str(k).lower() in lowered for k in condition.get("keywords") or [])

        if condition_type == "sentiment_analysis":
            sentiment = await self.classify(
                "Classify the sentiment of the message as positive, negative, or neutral. "
                "Return only the sentiment word.",
                user_message,
                max_tokens=10,
            )
            return sentiment == str(condition.get("sentiment", "")).lower()

        if condition_type == "intent_matching":
            intents = [str(i) for i in condition.get("intents") or []]
            if not intents:
                return False
            detected = await self.classify(
                f"Classify the user's intent from their message. Possible intents: {', '.join(intents)}\n"
                'Return only the matching intent, or "none" if no match.',
                user_message,
                history=(conversation_history or [])[-3:],
                max_tokens=50,
            )
            if not detected or detected == "none":
                return False
            return any(intent.lower() in detected for intent in intents)

        if condition_type == "data_extraction":
            data_type = condition.get("dataType") or condition.get("data_type")
            pattern = DATA_PATTERNS.get(data_type)
            if pattern:
                return bool(pattern.search(user_message))
            return session_data.get(data_type) is not None

        if condition_type == "custom_logic":
            verdict = await self.classify(
                f"Evaluate if the following custom condition is met:\n{condition.get('logic', '')}\n\n"
                "Consider the user's message, conversation history, and session data.\n"
                'Return "true" or "false" only.',
                f"Message: {user_message}\nSession Data: {json.dumps(session_data, default=str)}",
                max_tokens=10,
            )
            return verdict == "true"

        if condition_type == "session_variable":
            name = condition.get("variable")
            return name is not None and str(session_data.get(name)) == str(condition.get("value"))

        if condition_type == "regex_match":
            try:
                return bool(re.search(condition.get("pattern", ""), user_message, re.IGNORECASE))
            except re.error:
                logger.warning(f"Invalid regex in condition: {condition.get('pattern')!r}")
                return False

        logger.warning(f"Unknown condition type: {condition_type!r}")
        return False

    async def classify(
        self,
        system_prompt: str,
        user_message: str,
        history: list[dict] | None = None,
        max_tokens: int = 10,
    ) -> str:
        """Zero-temperature short classification; returns lower-cased, stripped text."""
        if history:
            response = await self.llm.call_llm_with_history(
                system_prompt,
                list(history) + [{"role": "user", "content": user_message}],
                temperature=0,
                max_tokens=max_tokens,
                model=self.model,
            )
        else:
            response = await self.llm.call_llm(
                system_prompt,
                user_message,
                temperature=0,
                max_tokens=max_tokens,
                model=self.model,
            )
        return response.lower().strip().strip('."\'')

    async def choose_option(self, system_prompt: str, user_message: str) -> int | None:
        """
        Ask the model to pick a 1-based option number.

        Returns None when the model answers "none" or anything without a number.
        """
        answer = await self.classify(system_prompt, user_message, max_tokens=10)
        match = re.search(r"\d+", answer)
        if not match:
            return None
        return int(match.group())

    @staticmethod
    def _format_transcript(conversation_history: list[dict]) -> str:
        lines = [
            f"{m.get('role', 'user').upper()}: {m.get('content', '')}"
            for m in conversation_history
        ]
        return "CONVERSATION SO FAR:\n" + "\n".join(lines) if lines else ""
