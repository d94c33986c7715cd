"""Guidance text that accompanies retrieved stories.

Canned tables are always available. When a completion service is configured,
empathy, lessons, a relevance note for the top story and translations are
generated through it; any failure there falls back to the canned text.
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import asdict, dataclass
from typing import Any

import httpx

from kripa.config import CompletionConfig
from kripa.errors import CompletionServiceError
from kripa.models import Language, Query, ScoredStory, Topic
from kripa.observability import record_counter
from kripa.resilience import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerError

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = (
    "Sorry, we don't have any stories matching your situation right now. "
    "Try sharing a few words (like 'job loss', 'illness', 'faith')."
)

GLOBAL_TABLES: dict[str, list[str]] = {
    "empathy": [
        "I'm sorry you're going through this. Let's look at what the sources say and find some guidance.",
        "It sounds like you're facing a difficult time. Here are some stories from fellow devotees who've walked similar paths.",
        "Your heart is heavy right now. Let these stories remind you that you're not alone in this journey.",
        "I understand this feels overwhelming. Here's what other devotees have shared about similar experiences.",
        "This must be challenging for you. Let's see what wisdom these stories might offer.",
    ],
    "gratitude": [
        "Take a moment to feel Maharaj-ji's love surrounding you right now",
        "Notice the breath moving in and out - a gift you don't have to earn",
        "Feel gratitude for having a heart open enough to seek guidance",
        "Rest in the knowing that you are held by an infinite love",
        "Thank Maharaj-ji for bringing you exactly what you need, when you need it",
    ],
    "community": [
        "You're among {count}+ devotees who have found comfort in these stories",
        "Hundreds of devotees have walked this path before you - you are not alone",
        "This community of seekers understands your journey intimately",
        "You join countless others who have found hope in these shared experiences",
    ],
}

TOPIC_TABLES: dict[str, dict[str, list[str]]] = {
    "practice": {
        "work": [
            "Take three deep breaths and repeat softly: 'I am provided for.'",
            "Offer your next small task as seva, not as burden.",
            "Pause for a minute, close your eyes, and say 'Ram Ram' before resuming work.",
        ],
        "relationships": [
            "Light a small diya for your loved ones and silently send them blessings.",
            "Place your hand on your heart and repeat 'Sab Ram hai'.",
            "Write down one thing you appreciate about a family member today.",
        ],
        "health": [
            "Sit quietly for 2 minutes and repeat 'I am healing, I am whole.'",
            "Take a mindful walk, each step repeating 'Ram Ram'.",
            "Offer gratitude to your body for carrying you this far.",
        ],
        "grief": [
            "Hold a photo or memory of your loved one and softly chant 'Ram Ram'.",
            "Write one line of love and release it into the air.",
            "Sit quietly and imagine Maharaj-ji's blanket of love around you.",
        ],
        "faith": [
            "Chant the Hanuman Chalisa (even one verse) with devotion.",
            "Sit for 5 minutes and repeat 'Ram Ram' without distraction.",
            "Offer a flower, mentally or physically, at Maharaj-ji's feet.",
        ],
        "other": [
            "Sit in silence for one minute, breathing in 'Ra', breathing out 'M'.",
            "Offer whatever is in your heart as prayer; no words needed.",
            "Fold your hands, bow your head, and whisper 'Thank you Maharaj-ji.'",
        ],
    },
    "reflection": {
        "work": [
            "What would it feel like to trust that Ram is guiding your career path?",
            "How might this work situation be preparing you for something greater?",
            "What aspects of seva (service) can you find in your current circumstances?",
        ],
        "relationships": [
            "How can you see the divine in the people who challenge you most?",
            "What would unconditional love look like in this situation?",
            "How might forgiveness free your own heart, regardless of others' actions?",
        ],
        "health": [
            "What is your body teaching you about surrender and acceptance?",
            "How can you honor both healing and acceptance in this moment?",
            "What would it mean to trust completely in divine timing for your recovery?",
        ],
        "grief": [
            "How do you feel your loved one's presence in your daily life now?",
            "What beautiful memories bring you closest to feeling their continued love?",
            "How might your grief be a testament to the depth of your connection?",
        ],
        "faith": [
            "Where do you feel Maharaj-ji's presence most clearly in your life?",
            "What simple practice makes your heart feel most connected to the divine?",
            "How has your spiritual journey surprised you so far?",
        ],
        "other": [
            "What would change if you fully trusted that you are deeply loved?",
            "How might this challenge be an invitation to grow in unexpected ways?",
            "What does your heart most need to hear right now?",
        ],
    },
    "next_steps": {
        "work": [
            "When you're ready, consider how this change might be Ram's way of opening a new door",
            "You might find peace in dedicating your job search as an offering to Maharaj-ji",
            "Consider reaching out to someone in your network - sometimes help comes through unexpected connections",
        ],
        "relationships": [
            "When it feels right, you might try sending loving thoughts to those who've hurt you",
            "Consider having that difficult conversation you've been avoiding, with love as your guide",
            "You might find healing in serving others who are also struggling with relationships",
        ],
        "health": [
            "Consider offering your healing journey as service to others facing similar challenges",
            "When you're ready, you might explore how this experience is deepening your compassion",
            "You might find comfort in dedicating your recovery process to Maharaj-ji",
        ],
        "grief": [
            "When it feels right, you might honor your loved one through acts of kindness",
            "Consider sharing a favorite memory with someone who also loved them",
            "You might find peace in doing something your loved one enjoyed, as a way of feeling close to them",
        ],
        "faith": [
            "When you feel called, consider deepening one spiritual practice that brings you joy",
            "You might find meaning in sharing your spiritual experiences with other seekers",
            "Consider visiting a place that makes you feel connected to the divine",
        ],
        "other": [
            "When you feel ready, consider how this experience might help you serve others",
            "You might find peace in dedicating this challenge to Maharaj-ji's guidance",
            "Consider reaching out to someone who cares about you and sharing what's in your heart",
        ],
    },
    "lessons": {
        "work": [
            "Work offered as service loses its power to crush you.",
            "Provision often arrives from directions we were not watching.",
        ],
        "relationships": [
            "Seeing the divine in another softens what anger hardens.",
            "Love does not wait for the other person to change first.",
        ],
        "health": [
            "The body's limits can become a doorway to surrender.",
            "Healing and acceptance are not opposites.",
        ],
        "grief": [
            "Those we love are never truly separate from us.",
            "Grief is love that has not yet found where to go.",
        ],
        "faith": [
            "Remembrance in small moments is itself the practice.",
            "Grace meets the sincere heart exactly where it is.",
        ],
        "other": [
            "You are held, even when you cannot feel it.",
            "Every difficulty carries an invitation to love more.",
        ],
    },
}


def _table_key(topic: Topic | str) -> str:
    if isinstance(topic, Topic):
        return topic.category
    try:
        return Topic(topic).category
    except ValueError:
        return topic if topic in TOPIC_TABLES["practice"] else "other"


def pick(category: str, topic: Topic | str | None, rng: random.Random) -> str:
    """Pick one canned line.

    Pure given ``rng``: tests inject a seeded ``random.Random``.

    Args:
        category: empathy, gratitude, community, practice, reflection, next_steps or lessons
        topic: Topic label or table key (ignored for global categories)
        rng: Random source

    Returns:
        Selected text

    Raises:
        KeyError: If the category is unknown
    """
    if category in GLOBAL_TABLES:
        line = rng.choice(GLOBAL_TABLES[category])
        if "{count}" in line:
            line = line.format(count=rng.randint(100, 299))
        return line

    table = TOPIC_TABLES[category]
    return rng.choice(table[_table_key(topic or "other")])


@dataclass
class Guidance:
    """Text blocks rendered around the stories."""

    empathy: str
    lessons: list[str]
    reflection: str
    community: str
    practice: str
    next_steps: str
    gratitude: str
    relevance: str | None = None


def canned_guidance(topic: Topic, rng: random.Random) -> Guidance:
    """Assemble guidance entirely from the canned tables."""
    return Guidance(
        empathy=pick("empathy", topic, rng),
        lessons=[pick("lessons", topic, rng)],
        reflection=pick("reflection", topic, rng),
        community=pick("community", topic, rng),
        practice=pick("practice", topic, rng),
        next_steps=pick("next_steps", topic, rng),
        gratitude=pick("gratitude", topic, rng),
    )


class CompletionClient:
    """OpenAI-compatible chat completion client returning JSON objects."""

    def __init__(
        self,
        config: CompletionConfig,
        client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None
        self.breaker = breaker or CircuitBreaker(
            "completions",
            CircuitBreakerConfig(call_timeout=config.timeout_seconds),
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def complete_json(self, system: str, user: str) -> dict[str, Any]:
        """Request a JSON object completion.

        Raises:
            CompletionServiceError: On any transport, timeout, breaker or format failure
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )

        try:
            return await self.breaker.call(self._request, system, user)
        except CompletionServiceError:
            raise
        except (CircuitBreakerError, TimeoutError, httpx.HTTPError, ValueError) as e:
            raise CompletionServiceError(f"Completion failed: {type(e).__name__}") from e

    async def _request(self, system: str, user: str) -> dict[str, Any]:
        assert self._client is not None
        response = await self._client.post(
            "/chat/completions",
            json={
                "model": self.config.model,
                "response_format": {"type": "json_object"},
                "temperature": 0.7,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            },
        )
        response.raise_for_status()
        content = response.json()["choices"][0]["message"]["content"]
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise CompletionServiceError("Completion did not return a JSON object")
        return parsed


_ENRICH_PROMPT = (
    "You support people bringing emotional or spiritual struggles to stories about "
    "Neem Karoli Baba. Reply with a JSON object with keys 'empathy' (one or two warm "
    "sentences), 'lessons' (a list of 2-3 short lessons drawn from the stories) and "
    "'relevance' (one sentence on why the first story speaks to this person)."
)

_TRANSLATE_PROMPT = (
    "Translate every string value of the given JSON object into {language}. "
    "Keep the same keys and structure and reply with the JSON object only."
)

_LANGUAGE_NAMES = {Language.HINDI: "Hindi"}


class GuidanceComposer:
    """Builds the guidance blocks for one matched query."""

    def __init__(self, completion: CompletionClient | None = None) -> None:
        """Initialize composer.

        Args:
            completion: Optional completion client; canned text only when None
        """
        self.completion = completion

    async def compose(
        self,
        query: Query,
        stories: list[ScoredStory],
        rng: random.Random,
    ) -> Guidance:
        """Compose guidance for matched stories.

        Args:
            query: The (cleaned) query
            stories: Ranked stories, best first
            rng: Random source for canned picks

        Returns:
            Guidance, enriched and translated where the completion service allows
        """
        guidance = canned_guidance(query.topic, rng)
        if self.completion is None:
            return guidance

        try:
            generated = await self.completion.complete_json(
                _ENRICH_PROMPT,
                json.dumps(
                    {
                        "topic": query.topic.value,
                        "question": query.question,
                        "stories": [
                            {"title": s.story.title, "content": s.story.content[:1500]}
                            for s in stories
                        ],
                    }
                ),
            )
            guidance = self._merge(guidance, generated)
            record_counter("guidance.enriched", 1, {"status": "success"})
        except CompletionServiceError as e:
            logger.warning(f"Guidance enrichment failed, using canned text: {e.message}")
            record_counter("guidance.enriched", 1, {"status": "fallback"})

        if query.language is not Language.ENGLISH:
            guidance = await self.translate(guidance, query.language)

        return guidance

    async def translate(self, guidance: Guidance, language: Language) -> Guidance:
        """Translate guidance; the English text is kept on failure."""
        if self.completion is None or language is Language.ENGLISH:
            return guidance

        try:
            translated = await self.completion.complete_json(
                _TRANSLATE_PROMPT.format(language=_LANGUAGE_NAMES.get(language, language.value)),
                json.dumps(asdict(guidance), ensure_ascii=False),
            )
        except CompletionServiceError as e:
            logger.warning(f"Translation to {language.value} failed, keeping English: {e.message}")
            return guidance

        return self._merge(guidance, translated)

    @staticmethod
    def _merge(guidance: Guidance, generated: dict[str, Any]) -> Guidance:
        """Overlay well-typed generated values onto canned guidance."""
        values = asdict(guidance)
        for key, current in values.items():
            candidate = generated.get(key)
            if key == "lessons":
                if isinstance(candidate, list) and all(isinstance(x, str) for x in candidate) and candidate:
                    values[key] = [x.strip() for x in candidate if x.strip()] or current
            elif isinstance(candidate, str) and candidate.strip():
                values[key] = candidate.strip()
        return Guidance(**values)
