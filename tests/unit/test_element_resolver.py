import pytest

from replay_service_lib.element_resolver import (
    TEXT_CANDIDATES,
    ElementResolver,
    ResolverStrategy,
    by_fuzzy_tokens,
    by_numeric_regex,
    css_attr,
    css_id,
    explain_miss,
    fuzzy_token_pattern,
    input_by_xpath,
    input_strategies,
    is_usable,
    normalize_text,
    numeric_label_pattern,
    text_candidates,
    via_label_wrapper,
)
from replay_service_lib.service_errors import ElementNotFound, InputTargetNotFound
from replay_service_lib.service_models import ElementDescriptor
from tests.mocks.page_mocks import FakeElement, FakeFrame, FakePage


def desc(**kwargs) -> ElementDescriptor:
    return ElementDescriptor.model_validate(kwargs)


class ShiftingPage(FakePage):
    """Inserts an element at the top of the document right after the first candidate query."""

    def __init__(self, elements, *, inserted: FakeElement):
        super().__init__(elements)
        self.inserted = inserted
        self.inserted_done = False

    async def query_selector_all(self, selector: str):
        found = await super().query_selector_all(selector)
        if selector == TEXT_CANDIDATES and not self.inserted_done:
            self.inserted_done = True
            if self.inserted not in self.elements:
                self.elements.insert(0, self.inserted)
        return found


class TestTextHelpers:
    def test_en_dash_becomes_hyphen(self):
        assert normalize_text("Continue–now") == "Continue-now"

    def test_em_dash_is_left_to_the_numeric_pass(self):
        assert normalize_text("1—2") == "1—2"

    def test_whitespace_is_collapsed_and_trimmed(self):
        assert normalize_text("  Pay \n\t now  ") == "Pay now"

    @pytest.mark.parametrize("raw", ["", "  A  b ", "x––y", "Mixed Case\n\nText", " lead"])
    def test_normalize_is_idempotent(self, raw):
        once = normalize_text(raw)
        assert normalize_text(once) == once

    def test_none_is_empty(self):
        assert normalize_text(None) == ""

    def test_numeric_pattern_escapes_all_but_hyphen(self):
        assert numeric_label_pattern("1-2 guests") == "1-2\\ guests"
        assert numeric_label_pattern("$20.00") == "\\$20\\.00"

    def test_fuzzy_pattern_joins_tokens(self):
        assert fuzzy_token_pattern("Book now") == "Book.*now"

    def test_css_helpers(self):
        assert css_id("go") == "#go"
        assert css_id("1st.item") == '[id="1st.item"]'
        assert css_attr("name", 'a"b') == '[name="a\\"b"]'


class TestUsability:
    @pytest.mark.asyncio
    async def test_visible_connected_element_is_usable(self):
        assert await is_usable(FakeElement("button", "Go"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "element",
        [
            None,
            FakeElement("button", "Go", box=(0, 0)),
            FakeElement("button", "Go", box=None),
            FakeElement("button", "Go", connected=False),
        ],
    )
    async def test_unusable_elements(self, element):
        assert not await is_usable(element)


class TestClickChain:
    @pytest.fixture
    def resolver(self) -> ElementResolver:
        return ElementResolver(input_wait_ms=10)

    @pytest.mark.asyncio
    async def test_id_wins_over_selector(self, resolver):
        by_id = FakeElement("button", "Go", attrs={"id": "go"})
        by_sel = FakeElement("button", "Other", selectors={"div > button.primary"})
        page = FakePage([by_sel, by_id])

        found = await resolver.resolve(page, desc(tag="BUTTON", id="go", selector="div > button.primary"))

        assert found.element is by_id
        assert found.strategy == "id"

    @pytest.mark.asyncio
    async def test_selector_used_when_id_is_stale(self, resolver):
        target = FakeElement("button", "Go", selectors={"div > button.primary"})
        page = FakePage([target])

        found = await resolver.resolve(page, desc(id="gone", selector="div > button.primary"))
        assert found.element is target
        assert found.strategy == "selector"

    @pytest.mark.asyncio
    async def test_name_then_xpath(self, resolver):
        named = FakeElement("input", attrs={"name": "agree"})
        pathed = FakeElement("a", "Link", xpath="/html/body/a[1]")
        page = FakePage([named, pathed])

        assert (await resolver.resolve(page, desc(name="agree"))).strategy == "name"
        found = await resolver.resolve(page, desc(xpath="/html/body/a[1]"))
        assert found.element is pathed
        assert found.strategy == "xpath"

    @pytest.mark.asyncio
    async def test_exact_text_match(self, resolver):
        submit = FakeElement("button", "Submit")
        page = FakePage([FakeElement("span", "Submit later"), submit])

        found = await resolver.resolve(page, desc(tag="BUTTON", text="Submit"))

        assert found.element is submit
        assert found.strategy == "exact-text"

    @pytest.mark.asyncio
    async def test_text_stays_paired_when_dom_changes(self, resolver):
        save = FakeElement("button", "Save")
        cancel = FakeElement("button", "Cancel")
        page = ShiftingPage([save, cancel], inserted=FakeElement("div", "Loading"))

        assert await text_candidates(page) == [(save, "Save"), (cancel, "Cancel")]

        save2 = FakeElement("button", "Save")
        cancel2 = FakeElement("button", "Cancel")
        page2 = ShiftingPage([save2, cancel2], inserted=FakeElement("div", "Loading"))
        found = await resolver.resolve(page2, desc(text="Save"))
        assert found.element is save2

    @pytest.mark.asyncio
    async def test_exact_text_ignores_case_and_spacing(self, resolver):
        target = FakeElement("a", "  Sign   IN ")
        page = FakePage([target])

        found = await resolver.resolve(page, desc(text="sign in"))
        assert found.element is target
        assert found.strategy == "exact-text"

    @pytest.mark.asyncio
    async def test_name_is_text_fallback(self, resolver):
        target = FakeElement("button", "Continue")
        page = FakePage([target])

        found = await resolver.resolve(page, desc(tag="BUTTON", name="Continue"))
        assert found.element is target

    @pytest.mark.asyncio
    async def test_substring_match(self, resolver):
        target = FakeElement("div", "Add to cart (3 left)")
        page = FakePage([target])

        found = await resolver.resolve(page, desc(text="add to cart"))
        assert found.element is target
        assert found.strategy == "substring-text"

    @pytest.mark.asyncio
    async def test_numeric_regex_match(self, resolver):
        target = FakeElement("label", "1—2 guests")
        page = FakePage([target])

        found = await resolver.resolve(page, desc(text="1-2 guests"))
        assert found.element is target
        assert found.strategy == "numeric-regex"

    @pytest.mark.asyncio
    async def test_numeric_regex_needs_a_digit(self):
        page = FakePage([FakeElement("button", "Pay")])
        assert await by_numeric_regex(page, desc(text="Pay")) is None

    @pytest.mark.asyncio
    async def test_fuzzy_token_match(self, resolver):
        target = FakeElement("button", "Book a table now for today")
        page = FakePage([target])

        found = await resolver.resolve(page, desc(text="Book now today"))
        assert found.element is target
        assert found.strategy == "fuzzy-regex"

    @pytest.mark.asyncio
    async def test_fuzzy_is_case_insensitive(self):
        target = FakeElement("span", "CONFIRM my ORDER")
        assert await by_fuzzy_tokens(FakePage([target]), desc(text="confirm order")) is target

    @pytest.mark.asyncio
    async def test_hidden_matches_are_skipped(self, resolver):
        hidden = FakeElement("button", "Submit", attrs={"id": "go"}, box=(0, 0))
        visible = FakeElement("button", "Submit")
        page = FakePage([hidden, visible])

        found = await resolver.resolve(page, desc(id="go", text="Submit"))

        assert found.element is visible
        assert found.strategy == "exact-text"

    @pytest.mark.asyncio
    async def test_not_found_raises(self, resolver):
        page = FakePage([FakeElement("button", "Submit")])

        with pytest.raises(ElementNotFound) as excinfo:
            await resolver.resolve(page, desc(tag="BUTTON", text="Nope"))
        assert "Nope" in excinfo.value.reason
        assert excinfo.value.step_index is None

    @pytest.mark.asyncio
    async def test_custom_chain_order(self):
        calls = []

        async def first(page, d):
            calls.append("first")
            return None

        async def second(page, d):
            calls.append("second")
            return FakeElement("div", "x")

        resolver = ElementResolver(click_chain=(ResolverStrategy("a", first), ResolverStrategy("b", second)))
        found = await resolver.resolve(FakePage(), desc(text="x"))

        assert calls == ["first", "second"]
        assert found.strategy == "b"


class TestLabelWrapper:
    @pytest.mark.asyncio
    async def test_for_attribute_target(self):
        checkbox = FakeElement("input", attrs={"id": "agree", "type": "checkbox"})
        label = FakeElement("label", "I agree", attrs={"for": "agree"}, selectors={"form > label.terms"}, box=(0, 0))
        page = FakePage([label, checkbox])

        found = await via_label_wrapper(page, desc(tag="LABEL", selector="form > label.terms"))
        assert found is checkbox

    @pytest.mark.asyncio
    async def test_nested_input(self):
        radio = FakeElement("input", attrs={"type": "radio", "value": "fast"})
        wrapper = FakeElement("span", "Fast", attrs={"id": "opt-fast"}, children=[radio])
        page = FakePage([wrapper])

        found = await via_label_wrapper(page, desc(tag="SPAN", id="opt-fast"))
        assert found is radio

    @pytest.mark.asyncio
    async def test_only_for_wrapper_tags(self):
        page = FakePage([FakeElement("div", attrs={"id": "x"})])
        assert await via_label_wrapper(page, desc(tag="DIV", id="x")) is None

    @pytest.mark.asyncio
    async def test_chain_reaches_wrapper_when_label_is_not_clickable(self):
        checkbox = FakeElement("input", attrs={"id": "news", "type": "checkbox"})
        label = FakeElement("label", attrs={"for": "news"}, selectors={"label.news"}, box=(0, 0))
        page = FakePage([label, checkbox])

        found = await ElementResolver().resolve(page, desc(tag="LABEL", selector="label.news"))

        assert found.element is checkbox
        assert found.strategy == "label-wrapper"


class TestInputChain:
    @pytest.fixture
    def resolver(self) -> ElementResolver:
        return ElementResolver(input_chain=input_strategies(wait_ms=5))

    @pytest.mark.asyncio
    async def test_recorded_selector(self, resolver):
        field = FakeElement("input", attrs={"type": "email"}, selectors={"#login input.email"})
        page = FakePage([field])

        found = await resolver.resolve_for_input(page, desc(tag="INPUT", selector="#login input.email"))
        assert found.element is field
        assert found.strategy == "selector"

    @pytest.mark.asyncio
    async def test_name_selector_when_no_selector(self, resolver):
        field = FakeElement("input", attrs={"name": "q"})
        found = await resolver.resolve_for_input(FakePage([field]), desc(tag="INPUT", name="q"))
        assert found.element is field

    @pytest.mark.asyncio
    async def test_iframe_field(self, resolver):
        field = FakeElement("input", attrs={"name": "card"})
        page = FakePage([], child_frames=[FakeFrame([field], url="https://pay.test/frame")])

        found = await resolver.resolve_for_input(page, desc(tag="INPUT", name="card"))
        assert found.element is field
        assert found.strategy == "frames"

    @pytest.mark.asyncio
    async def test_parent_container_by_id(self, resolver):
        inner = FakeElement("input", attrs={"type": "text"})
        container = FakeElement("div", attrs={"id": "search-box"}, children=[inner])
        other = FakeElement("input", attrs={"type": "text"})
        page = FakePage([other, container])

        found = await resolver.resolve_for_input(page, desc(tag="INPUT", selector="#search-box > input:nth-child(2)"))

        assert found.element is inner
        assert found.strategy == "parent-id"

    @pytest.mark.asyncio
    async def test_xpath_only_accepts_input_elements(self, resolver):
        wrapper = FakeElement("div", "Email", xpath="/html/body/div[1]")
        field = FakeElement("input", attrs={"type": "email"}, xpath="/html/body/input[1]")
        page = FakePage([wrapper, field])

        assert await input_by_xpath(page, desc(xpath="/html/body/div[1]")) is None
        assert await input_by_xpath(page, desc(xpath="/html/body/input[1]")) is field

        found = await resolver.resolve_for_input(page, desc(tag="INPUT", xpath="/html/body/input[1]"))
        assert found.strategy == "xpath"

    @pytest.mark.asyncio
    async def test_class_name(self, resolver):
        field = FakeElement("input", attrs={"class": "form-control qty", "type": "number"})
        page = FakePage([field])

        found = await resolver.resolve_for_input(page, desc(tag="INPUT", className="form-control qty"))
        assert found.strategy == "class-name"

    @pytest.mark.asyncio
    async def test_first_enabled_visible_text_input(self, resolver):
        disabled = FakeElement("input", attrs={"type": "text"}, enabled=False)
        hidden = FakeElement("input", visible=False)
        target = FakeElement("input")
        page = FakePage([FakeElement("input", attrs={"type": "checkbox"}), disabled, hidden, target])

        found = await resolver.resolve_for_input(page, desc(tag="INPUT", name="missing"))

        assert found.element is target
        assert found.strategy == "first-text-input"

    @pytest.mark.asyncio
    async def test_not_found_raises(self, resolver):
        page = FakePage([FakeElement("input", attrs={"type": "checkbox"})])
        with pytest.raises(InputTargetNotFound):
            await resolver.resolve_for_input(page, desc(tag="INPUT", name="missing"))


class TestExplainMiss:
    @pytest.mark.asyncio
    async def test_report_lists_counts_and_visible_texts(self):
        page = FakePage([FakeElement("button", "Submit"), FakeElement("a", "Home"), FakeElement("div", "")])

        lines = await explain_miss(page, desc(id="go", selector="#form .go", text="Nope"))

        assert 'by recorded id "#go" -> 0 matches' in lines
        assert 'by recorded selector "#form .go" -> 0 matches' in lines
        assert 'exact text "Nope" -> 0 matches' in lines
        assert lines[-1] == "visible clickable texts: ['Submit', 'Home']"
