"""
Element resolution for replayed click and input events.

A recorded ElementDescriptor is only a set of hints: ids get regenerated,
CSS paths drift, labels get reformatted. Each hint is tried through an
ordered chain of strategies, stopping at the first one that yields an
element that is attached to the document and has a non-empty box.

Strategies are plain ``async (page, descriptor) -> Optional[ElementHandle]``
functions with no side effects on the page, so they can be reordered,
extended and unit tested one by one.
"""

from __future__ import annotations

import functools
import logging
import re
from typing import Awaitable, Callable, NamedTuple, Optional

from playwright.async_api import ElementHandle, Page
from playwright.async_api import Error as PlaywrightError

from .service_errors import ElementNotFound, InputTargetNotFound
from .service_models import ElementDescriptor

logger = logging.getLogger("service")

TEXT_CANDIDATES = "button,a,label,span,div"
GENERIC_TEXT_INPUTS = 'input[type="text"],input[type="number"],input:not([type])'
WRAPPER_TAGS = ("LABEL", "SPAN")

_IS_CONNECTED_JS = "(el) => el.isConnected"
_TAG_NAME_JS = "(el) => el.tagName"
_INNER_TEXTS_JS = "(els) => els.map((el) => el.innerText || '')"

_WS_RE = re.compile(r"\s+")
_DASHES_RE = re.compile("[–—]")
_DIGIT_RE = re.compile(r"\d")
_PARENT_ID_RE = re.compile(r"#([^ >]+)")
_PLAIN_ID_RE = re.compile(r"^[A-Za-z_][\w-]*$")

Strategy = Callable[[Page, ElementDescriptor], Awaitable[Optional[ElementHandle]]]


class ResolverStrategy(NamedTuple):
    name: str
    fn: Strategy


class Resolution(NamedTuple):
    element: ElementHandle
    strategy: str


# -------------------------------------------------------------------
# Text helpers
# -------------------------------------------------------------------
def normalize_text(value: Optional[str]) -> str:
    """En dash to hyphen, whitespace runs collapsed, trimmed. Case is kept."""
    if not value:
        return ""
    return _WS_RE.sub(" ", value.replace("–", "-")).strip()


def fold_text(value: Optional[str]) -> str:
    return normalize_text(value).casefold()


def _candidate_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return _WS_RE.sub(" ", _DASHES_RE.sub("-", value)).strip()


def numeric_label_pattern(text: str) -> str:
    """Escape every non-alphanumeric character except the hyphen."""
    return "".join(ch if ch.isalnum() or ch == "-" else re.escape(ch) for ch in text)


def fuzzy_token_pattern(text: str) -> str:
    return ".*".join(re.escape(tok) for tok in text.split(" ") if tok)


def target_text(descriptor: ElementDescriptor) -> str:
    return normalize_text(descriptor.text or descriptor.name)


def css_id(value: str) -> str:
    if _PLAIN_ID_RE.match(value):
        return f"#{value}"
    return css_attr("id", value)


def css_attr(attr: str, value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'[{attr}="{escaped}"]'


def input_selector(descriptor: ElementDescriptor) -> Optional[str]:
    if descriptor.selector:
        return descriptor.selector
    if descriptor.name:
        return css_attr("name", descriptor.name)
    return None


# -------------------------------------------------------------------
# Page queries
# -------------------------------------------------------------------
async def is_usable(element: Optional[ElementHandle]) -> bool:
    """True when the element is attached to the document and renders with a non-zero box."""
    if element is None:
        return False
    try:
        if not await element.evaluate(_IS_CONNECTED_JS):
            return False
        box = await element.bounding_box()
    except PlaywrightError as exc:
        logger.debug("[replay/locate] usability check failed: %s", exc)
        return False
    return bool(box) and box["width"] > 0 and box["height"] > 0


async def _query_all(scope, selector: str) -> list[ElementHandle]:
    try:
        return await scope.query_selector_all(selector)
    except PlaywrightError as exc:
        logger.debug("[replay/locate] query failed for %r: %s", selector, exc)
        return []


async def first_usable(scope, selector: Optional[str]) -> Optional[ElementHandle]:
    if not selector:
        return None
    for element in await _query_all(scope, selector):
        if await is_usable(element):
            return element
    return None


async def text_candidates(page: Page) -> list[tuple[ElementHandle, str]]:
    """Candidate handles paired with their innerText, read from those same handles."""
    handles = await _query_all(page, TEXT_CANDIDATES)
    if not handles:
        return []
    try:
        texts = await page.evaluate(_INNER_TEXTS_JS, handles)
    except PlaywrightError as exc:
        logger.debug("[replay/locate] reading candidate texts failed: %s", exc)
        return []
    return list(zip(handles, texts))


async def _first_text_match(page: Page, predicate: Callable[[str], bool]) -> Optional[ElementHandle]:
    for element, raw in await text_candidates(page):
        if predicate(raw or "") and await is_usable(element):
            return element
    return None


# -------------------------------------------------------------------
# Click strategies, in priority order
# -------------------------------------------------------------------
async def by_id(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    if not descriptor.id:
        return None
    return await first_usable(page, css_id(descriptor.id))


async def by_selector(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    return await first_usable(page, descriptor.selector)


async def by_name(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    if not descriptor.name:
        return None
    return await first_usable(page, css_attr("name", descriptor.name))


async def by_xpath(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    if not descriptor.xpath:
        return None
    return await first_usable(page, f"xpath={descriptor.xpath}")


async def via_label_wrapper(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    """A recorded LABEL/SPAN click usually meant its checkbox, radio or input."""
    if descriptor.tag_name not in WRAPPER_TAGS:
        return None
    wrapper_selectors = [descriptor.selector, css_id(descriptor.id) if descriptor.id else None]
    for selector in [s for s in wrapper_selectors if s]:
        for wrapper in await _query_all(page, selector):
            try:
                for_id = await wrapper.get_attribute("for")
                if for_id:
                    target = await first_usable(page, css_id(for_id))
                    if target:
                        return target
                nested = await wrapper.query_selector('input, [type="checkbox"], [type="radio"]')
            except PlaywrightError as exc:
                logger.debug("[replay/locate] wrapper lookup failed: %s", exc)
                continue
            if await is_usable(nested):
                return nested
    return None


async def by_exact_text(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    wanted = fold_text(target_text(descriptor))
    if not wanted:
        return None
    return await _first_text_match(page, lambda raw: fold_text(raw) == wanted)


async def by_substring_text(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    wanted = fold_text(target_text(descriptor))
    if not wanted:
        return None
    return await _first_text_match(page, lambda raw: wanted in fold_text(raw))


async def by_numeric_regex(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    wanted = target_text(descriptor)
    if not wanted or not _DIGIT_RE.search(wanted):
        return None
    pattern = re.compile(numeric_label_pattern(wanted), re.IGNORECASE)
    return await _first_text_match(page, lambda raw: bool(pattern.search(_candidate_text(raw))))


async def by_fuzzy_tokens(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    wanted = target_text(descriptor)
    if not wanted:
        return None
    pattern = re.compile(fuzzy_token_pattern(wanted), re.IGNORECASE)
    return await _first_text_match(page, lambda raw: bool(pattern.search(normalize_text(raw))))


CLICK_STRATEGIES: tuple[ResolverStrategy, ...] = (
    ResolverStrategy("id", by_id),
    ResolverStrategy("selector", by_selector),
    ResolverStrategy("name", by_name),
    ResolverStrategy("xpath", by_xpath),
    ResolverStrategy("label-wrapper", via_label_wrapper),
    ResolverStrategy("exact-text", by_exact_text),
    ResolverStrategy("substring-text", by_substring_text),
    ResolverStrategy("numeric-regex", by_numeric_regex),
    ResolverStrategy("fuzzy-regex", by_fuzzy_tokens),
)


# -------------------------------------------------------------------
# Input strategies, in priority order
# -------------------------------------------------------------------
async def input_by_selector(page: Page, descriptor: ElementDescriptor, *, wait_ms: int = 3000) -> Optional[ElementHandle]:
    selector = input_selector(descriptor)
    if not selector:
        return None
    try:
        element = await page.wait_for_selector(selector, state="attached", timeout=wait_ms)
    except PlaywrightError as exc:
        logger.debug("[replay/locate] input selector %r not found: %s", selector, exc)
        return None
    if await is_usable(element):
        return element
    return await first_usable(page, selector)


async def input_in_frames(page: Page, descriptor: ElementDescriptor, *, wait_ms: int = 3000) -> Optional[ElementHandle]:
    selector = input_selector(descriptor)
    if not selector:
        return None
    for frame in page.frames:
        if frame is page.main_frame:
            continue
        try:
            element = await frame.wait_for_selector(selector, state="attached", timeout=wait_ms)
        except PlaywrightError as exc:
            logger.debug("[replay/locate] frame %s has no %r: %s", getattr(frame, "url", "?"), selector, exc)
            continue
        if await is_usable(element):
            return element
    return None


async def input_by_parent_id(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    selector = input_selector(descriptor) or ""
    match = _PARENT_ID_RE.search(selector)
    if not match:
        return None
    for parent in await _query_all(page, css_id(match.group(1))):
        try:
            child = await parent.query_selector("input")
        except PlaywrightError as exc:
            logger.debug("[replay/locate] parent #%s lookup failed: %s", match.group(1), exc)
            continue
        if await is_usable(child):
            return child
    return None


async def input_by_xpath(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    element = await by_xpath(page, descriptor)
    if element is None:
        return None
    try:
        tag = await element.evaluate(_TAG_NAME_JS)
    except PlaywrightError as exc:
        logger.debug("[replay/locate] xpath tag check failed: %s", exc)
        return None
    return element if (tag or "").upper() == "INPUT" else None


async def input_by_class_name(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    if not descriptor.class_name:
        return None
    classes = ".".join(descriptor.class_name.split())
    return await first_usable(page, f"input.{classes}")


async def first_text_input(page: Page, descriptor: ElementDescriptor) -> Optional[ElementHandle]:
    for element in await _query_all(page, GENERIC_TEXT_INPUTS):
        try:
            if not (await element.is_enabled() and await element.is_visible()):
                continue
        except PlaywrightError:
            continue
        if await is_usable(element):
            return element
    return None


def input_strategies(wait_ms: int = 3000) -> tuple[ResolverStrategy, ...]:
    return (
        ResolverStrategy("selector", functools.partial(input_by_selector, wait_ms=wait_ms)),
        ResolverStrategy("frames", functools.partial(input_in_frames, wait_ms=wait_ms)),
        ResolverStrategy("parent-id", input_by_parent_id),
        ResolverStrategy("xpath", input_by_xpath),
        ResolverStrategy("class-name", input_by_class_name),
        ResolverStrategy("first-text-input", first_text_input),
    )


# -------------------------------------------------------------------
# Resolver
# -------------------------------------------------------------------
class ElementResolver:
    def __init__(
        self,
        click_chain: Optional[tuple[ResolverStrategy, ...]] = None,
        input_chain: Optional[tuple[ResolverStrategy, ...]] = None,
        *,
        input_wait_ms: int = 3000,
        log: Optional[logging.Logger] = None,
    ):
        self.click_chain = click_chain if click_chain is not None else CLICK_STRATEGIES
        self.input_chain = input_chain if input_chain is not None else input_strategies(input_wait_ms)
        self.log = log or logger

    async def _run_chain(
        self, chain: tuple[ResolverStrategy, ...], page: Page, descriptor: ElementDescriptor
    ) -> Optional[Resolution]:
        for strategy in chain:
            element = await strategy.fn(page, descriptor)
            if element is not None:
                self.log.debug("[replay/locate] resolved via %s", strategy.name)
                return Resolution(element, strategy.name)
            self.log.debug("[replay/locate] strategy %s: no match", strategy.name)
        return None

    async def resolve(self, page: Page, descriptor: ElementDescriptor) -> Resolution:
        found = await self._run_chain(self.click_chain, page, descriptor)
        if found is None:
            raise ElementNotFound(f'could not click "{target_text(descriptor) or descriptor.selector or ""}"')
        return found

    async def resolve_for_input(self, page: Page, descriptor: ElementDescriptor) -> Resolution:
        found = await self._run_chain(self.input_chain, page, descriptor)
        if found is None:
            raise InputTargetNotFound(f"Input field not found: {input_selector(descriptor) or descriptor.xpath or ''}")
        return found


async def explain_miss(page: Page, descriptor: ElementDescriptor, max_texts: int = 50) -> list[str]:
    """Per-hint match counts plus the visible clickable texts, for failure reports."""
    reasons: list[str] = []
    if descriptor.id:
        reasons.append(f'by recorded id "{css_id(descriptor.id)}" -> {len(await _query_all(page, css_id(descriptor.id)))} matches')
    if descriptor.selector:
        reasons.append(f'by recorded selector "{descriptor.selector}" -> {len(await _query_all(page, descriptor.selector))} matches')
    if descriptor.name:
        sel = css_attr("name", descriptor.name)
        reasons.append(f'by name "{sel}" -> {len(await _query_all(page, sel))} matches')
    if descriptor.xpath:
        found = await _query_all(page, f"xpath={descriptor.xpath}")
        reasons.append(f'by xpath "{descriptor.xpath}" -> {"found" if found else "not found"}')

    wanted = target_text(descriptor)
    candidates = await text_candidates(page)
    folded = [fold_text(raw) for _, raw in candidates]
    if wanted:
        reasons.append(f'exact text "{wanted}" -> {sum(1 for t in folded if t == wanted.casefold())} matches')
        reasons.append(f"substring match -> {sum(1 for t in folded if wanted.casefold() in t)} matches")

    visible = [normalize_text(raw) for _, raw in candidates if normalize_text(raw)]
    reasons.append(f"visible clickable texts: {visible[:max_texts]}")
    return reasons
