"""Operation types a bulk job can run.

Each operation bundles the idempotency predicate, the fixed instruction sent to
the generation service, output validation and the article fields written back.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol, Sequence

from bulkops_api.services.augment.errors import ItemTransformError, UnknownOperationError
from bulkops_api.services.augment.links import (
    ANY_LINK_PATTERN,
    LinkChecker,
    extract_external_urls,
    has_external_link,
    has_internal_link,
    strip_links,
)
from bulkops_api.services.augment.store import ArticleStore
from bulkops_api.services.augment.types import Article

ADD_INTERNAL_LINKS = "add_internal_links"
GENERATE_SEO = "generate_seo"
TLDR_CONTEXT_UPDATE = "tldr_context_update"

REFERENCE_ARTICLE_LIMIT = 100
MIN_RETAINED_CONTENT_RATIO = 0.9
SEO_INPUT_CHARS = 3000
TLDR_INPUT_CHARS = 2000
SEO_REQUIRED_FIELDS = ("meta_title", "seo_title", "focus_keyphrase", "keyphrase_synonyms")


class Operation(Protocol):
    name: str

    def satisfied_reason(self, article: Article) -> str | None: ...

    def build_instruction(self, store: ArticleStore) -> str: ...

    def build_input(self, article: Article) -> str: ...

    def parse_output(self, output: str, article: Article) -> dict[str, Any]: ...

    def preview(self, fields: dict[str, Any]) -> str: ...


class InternalLinksOperation:
    name = ADD_INTERNAL_LINKS

    def __init__(self, *, max_input_chars: int = 8000, link_checker: LinkChecker | None = None) -> None:
        self._max_input_chars = max_input_chars
        self._link_checker = link_checker

    def satisfied_reason(self, article: Article) -> str | None:
        if has_internal_link(article.content) and has_external_link(article.content):
            return "Already has internal and external links"
        return None

    def build_instruction(self, store: ArticleStore) -> str:
        references = store.list_published(limit=REFERENCE_ARTICLE_LIMIT)
        article_list = "\n".join(f"- {article.title} ({article.path})" for article in references)
        return (
            "You are an SEO editor. Add internal and external links to existing article content.\n\n"
            "Rules:\n"
            "- Add 2-4 internal links from the article list below using natural anchor text.\n"
            "- Internal links use the exact path from the list: [text](/category-slug/article-slug).\n"
            "- Add 1-2 external links to authoritative, stable sources as [text](https://...)^.\n"
            "- Preserve all existing text, headings, paragraphs and formatting. Only add links.\n\n"
            f"AVAILABLE ARTICLES:\n{article_list or '(none)'}\n\n"
            "Return ONLY the updated content."
        )

    def build_input(self, article: Article) -> str:
        if not article.content.strip():
            raise ItemTransformError("article has no content to link")
        if len(article.content) > self._max_input_chars:
            raise ItemTransformError(
                f"content is {len(article.content)} characters; limit is {self._max_input_chars}"
            )
        return f"Title: {article.title}\n\nContent:\n{article.content}"

    def parse_output(self, output: str, article: Article) -> dict[str, str]:
        content = output.strip()
        original_length = len(article.content.strip())
        if len(content) < original_length * MIN_RETAINED_CONTENT_RATIO:
            raise ItemTransformError(
                f"generated content dropped existing text ({len(content)} of {original_length} characters)"
            )

        if self._link_checker is not None:
            unreachable = {
                url for url in extract_external_urls(content) if not self._link_checker.is_reachable(url)
            }
            if unreachable:
                print(
                    f"[augment] removing unreachable links article_id={article.id} count={len(unreachable)}",
                    flush=True,
                )
                content = strip_links(content, unreachable)

        if ANY_LINK_PATTERN.search(content) is None:
            raise ItemTransformError("generated content contains no links")
        return {"content": content}

    def preview(self, fields: dict[str, str]) -> str:
        return fields["content"]


_JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


def _parse_json_object(output: str, label: str) -> dict[str, Any]:
    match = _JSON_OBJECT_PATTERN.search(output)
    if match is None:
        raise ItemTransformError(f"generated {label} is not JSON")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ItemTransformError(f"generated {label} is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ItemTransformError(f"generated {label} must be a JSON object")
    return payload


class SeoMetadataOperation:
    name = GENERATE_SEO

    def satisfied_reason(self, article: Article) -> str | None:
        if all((getattr(article, field) or "").strip() for field in SEO_REQUIRED_FIELDS):
            return "SEO metadata already present"
        return None

    def build_instruction(self, store: ArticleStore) -> str:
        return (
            "You are an SEO specialist. Generate SEO metadata for the article. "
            "Return ONLY valid JSON with these exact fields:\n"
            "{\n"
            '  "meta_title": "up to 60 characters with the main keyword",\n'
            '  "seo_title": "up to 60 characters, optimised title with the main keyword",\n'
            '  "focus_keyphrase": "main keyword phrase (2-4 words)",\n'
            '  "keyphrase_synonyms": "synonym1, synonym2, synonym3",\n'
            '  "meta_description": "up to 155 characters, compelling description"\n'
            "}"
        )

    def build_input(self, article: Article) -> str:
        text = f"{article.title}\n\n{article.excerpt or ''}\n\n{article.content}"
        return f"Generate SEO metadata for this article:\n\n{text[:SEO_INPUT_CHARS]}"

    def parse_output(self, output: str, article: Article) -> dict[str, Any]:
        payload = _parse_json_object(output, "SEO metadata")

        fields: dict[str, Any] = {}
        for field in SEO_REQUIRED_FIELDS:
            value = payload.get(field)
            if not isinstance(value, str) or not value.strip():
                raise ItemTransformError(f"generated SEO metadata is missing {field}")
            fields[field] = value.strip()

        description = payload.get("meta_description")
        if isinstance(description, str) and description.strip():
            fields["meta_description"] = description.strip()
        elif article.excerpt:
            fields["meta_description"] = article.excerpt
        return fields

    def preview(self, fields: dict[str, Any]) -> str:
        return json.dumps(fields, ensure_ascii=False)


def _tldr_bullets(snapshot: Any) -> list[Any]:
    if isinstance(snapshot, list):
        return snapshot
    if isinstance(snapshot, dict) and isinstance(snapshot.get("bullets"), list):
        return snapshot["bullets"]
    return []


class TldrContextOperation:
    """Adds the audience and outlook lines to an article's TL;DR snapshot.

    Existing bullets are carried over unchanged; snapshots stored as a bare
    bullet list are upgraded to the object form.
    """

    name = TLDR_CONTEXT_UPDATE

    def satisfied_reason(self, article: Article) -> str | None:
        snapshot = article.tldr_snapshot
        if isinstance(snapshot, dict) and snapshot.get("whoShouldPayAttention"):
            return "TL;DR context already present"
        return None

    def build_instruction(self, store: ArticleStore) -> str:
        return (
            "You are adding editorial context to an article TL;DR. Use British English, "
            "no emojis, and stay factual and restrained.\n"
            "Return ONLY valid JSON with these exact fields:\n"
            "{\n"
            '  "whoShouldPayAttention": "relevant audiences separated by | (under 20 words)",\n'
            '  "whatChangesNext": "one short sentence on what to watch next, or an empty string"\n'
            "}"
        )

    def build_input(self, article: Article) -> str:
        if not article.content.strip():
            raise ItemTransformError("article has no content to summarise")
        return f'Article: "{article.title}"\nContent: {article.content[:TLDR_INPUT_CHARS]}'

    def parse_output(self, output: str, article: Article) -> dict[str, Any]:
        payload = _parse_json_object(output, "TL;DR context")

        audience = payload.get("whoShouldPayAttention")
        if not isinstance(audience, str) or not audience.strip():
            raise ItemTransformError("generated TL;DR context is missing whoShouldPayAttention")
        outlook = payload.get("whatChangesNext")
        if outlook is not None and not isinstance(outlook, str):
            raise ItemTransformError("generated TL;DR context has a non-text whatChangesNext")

        return {
            "tldr_snapshot": {
                "bullets": _tldr_bullets(article.tldr_snapshot),
                "whoShouldPayAttention": audience.strip(),
                "whatChangesNext": (outlook or "").strip(),
            }
        }

    def preview(self, fields: dict[str, Any]) -> str:
        return json.dumps(fields["tldr_snapshot"], ensure_ascii=False)


def build_operation(
    operation_type: str,
    *,
    max_input_chars: int = 8000,
    link_checker: LinkChecker | None = None,
) -> Operation:
    if operation_type == ADD_INTERNAL_LINKS:
        return InternalLinksOperation(max_input_chars=max_input_chars, link_checker=link_checker)
    if operation_type == GENERATE_SEO:
        return SeoMetadataOperation()
    if operation_type == TLDR_CONTEXT_UPDATE:
        return TldrContextOperation()
    raise UnknownOperationError(operation_type)


def supported_operations() -> Sequence[str]:
    return (ADD_INTERNAL_LINKS, GENERATE_SEO, TLDR_CONTEXT_UPDATE)
