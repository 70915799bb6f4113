"""
LLM-backed entity provider.

Proposes neighbors for a node (people for a thing, works/events for a
person), classifies free-text search titles, and finds chains of entities
connecting two titles. Uses OpenAI chat completions in JSON mode.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from openai import APITimeoutError, AsyncOpenAI, OpenAIError

from config import MODEL_CLASSIFY, MODEL_NEIGHBORS, OPENAI_API_KEY, PROVIDER_TIMEOUT_SECONDS
from models_graph import Candidate, NodeType
from services_external_calls import ExternalCallError, ExternalCallTimeout

logger = logging.getLogger("constellations")

SERVICE = "openai"

SYSTEM_PROMPT = """
You are a collaboration graph generator exploring history, pop culture, and current events.
The graph is bipartite: "Things" (events, projects, movies, battles, administrations, companies,
books, albums...) are connected only through the "People" who took part in them.
Only name real, specific, verifiable entities. Never return generic answers.
Always answer with a single JSON object and nothing else.
"""

THING_NEIGHBORS_PROMPT = """
List 12-15 distinct, high-impact people involved in "{title}".
- For movies: actors, director, writer.
- For political administrations: key cabinet members, appointees and advisors.
- For historical events: key figures, generals, leaders.
{context}
Return JSON: {{"people": [{{"name": str, "role": str (their role in "{title}"), "description": str (one sentence)}}]}}
"""

PERSON_NEIGHBORS_PROMPT = """
List 5 significant movies, events, projects or organisations that "{title}" is famous for participating in.
{context}
Return JSON: {{"works": [{{"entity": str, "role": str (what they did there), "description": str (one sentence),
"year": int or null (year it started or was released)}}]}}
"""

CLASSIFY_PROMPT = """
Is "{title}" a person, or a thing (event, work, project, organisation, place...)?
Return JSON: {{"type": "Person" | "Thing"}}
"""

PATH_PROMPT = """
Find the shortest chain of real collaborations connecting "{start}" to "{end}".
Alternate between people and things; each consecutive pair must be directly connected
(a person who took part in a thing). Do not include "{start}" or "{end}" themselves.
Return JSON: {{"path": [{{"title": str, "type": "Person" | "Thing", "description": str,
"year": int or null, "role": str (how it connects to the previous step)}}]}}
"""


def _parse_year(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        match = re.search(r"(-?\d{1,4})(?:\s*(BCE?|B\.C\.(?:E\.)?))?", value, re.IGNORECASE)
        if match:
            year = int(match.group(1))
            return -abs(year) if match.group(2) else year
    return None


def _context_block(context_titles: Sequence[str], known_summary: Optional[str], exclude: bool) -> str:
    lines: List[str] = []
    if known_summary:
        lines.append(f"Background, to identify the right entity: {known_summary[:600]}")
    if context_titles:
        joined = ", ".join(context_titles)
        if exclude:
            lines.append(f"Already known (do NOT repeat these, propose different ones): {joined}")
        else:
            lines.append(f"It is connected to: {joined}")
    return "\n".join(lines)


class OpenAIEntityProvider:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = MODEL_NEIGHBORS,
        classify_model: str = MODEL_CLASSIFY,
    ):
        if client is None:
            cleaned = (OPENAI_API_KEY or "").strip().strip('"').strip("'")
            if cleaned:
                client = AsyncOpenAI(api_key=cleaned)
            else:
                logger.warning("[entity_provider] OPENAI_API_KEY not set; provider calls will fail.")
        self.client: Optional[AsyncOpenAI] = client
        self.model = model
        self.classify_model = classify_model

    async def _complete_json(self, prompt: str, model: str) -> Dict[str, Any]:
        if self.client is None:
            raise ExternalCallError(SERVICE, "OpenAI client not initialised. Check OPENAI_API_KEY.")
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT.strip()},
                    {"role": "user", "content": prompt.strip()},
                ],
                response_format={"type": "json_object"},
                temperature=0.4,
            )
        except APITimeoutError as e:
            raise ExternalCallTimeout(SERVICE, PROVIDER_TIMEOUT_SECONDS) from e
        except OpenAIError as e:
            logger.error(f"[entity_provider] completion failed (model={model}): {e}")
            raise ExternalCallError(SERVICE, str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            return {}
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ExternalCallError(SERVICE, "model returned invalid JSON") from e
        return data if isinstance(data, dict) else {}

    async def classify(self, title: str) -> NodeType:
        data = await self._complete_json(CLASSIFY_PROMPT.format(title=title), self.classify_model)
        return NodeType.parse(data.get("type"))

    async def fetch_neighbors(
        self,
        title: str,
        node_type: NodeType,
        context_titles: Sequence[str] = (),
        known_summary: Optional[str] = None,
        exclude_known: bool = False,
    ) -> List[Candidate]:
        context = _context_block(context_titles, known_summary, exclude_known)
        if node_type is NodeType.PERSON:
            data = await self._complete_json(
                PERSON_NEIGHBORS_PROMPT.format(title=title, context=context), self.model
            )
            return [
                Candidate(
                    title=str(w["entity"]).strip(),
                    type=NodeType.THING,
                    description=w.get("description"),
                    year=_parse_year(w.get("year")),
                    role=w.get("role"),
                )
                for w in data.get("works") or []
                if isinstance(w, dict) and str(w.get("entity") or "").strip()
            ]

        data = await self._complete_json(
            THING_NEIGHBORS_PROMPT.format(title=title, context=context), self.model
        )
        return [
            Candidate(
                title=str(p["name"]).strip(),
                type=NodeType.PERSON,
                description=p.get("description"),
                role=p.get("role"),
            )
            for p in data.get("people") or []
            if isinstance(p, dict) and str(p.get("name") or "").strip()
        ]

    async def find_path(self, start_title: str, end_title: str) -> List[Candidate]:
        data = await self._complete_json(PATH_PROMPT.format(start=start_title, end=end_title), self.model)
        return [
            Candidate(
                title=str(step["title"]).strip(),
                type=NodeType.parse(step.get("type")),
                description=step.get("description"),
                year=_parse_year(step.get("year")),
                role=step.get("role"),
            )
            for step in data.get("path") or []
            if isinstance(step, dict) and str(step.get("title") or "").strip()
        ]
