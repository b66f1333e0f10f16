"""
Rule Guidance

Human-readable guidance for axe-core rule ids: title, description,
remediation, the WCAG success criterion, its principle and conformance
level. Lookup is total: unknown ids get DEFAULT_GUIDANCE.
"""

from dataclasses import dataclass
from typing import Dict, Optional

PERCEIVABLE = "Perceivable"
OPERABLE = "Operable"
UNDERSTANDABLE = "Understandable"
ROBUST = "Robust"


@dataclass(frozen=True)
class RuleGuidance:
    title: str
    description: str
    remediation: str
    wcag: str
    principle: str
    level: str = "A"


DEFAULT_GUIDANCE = RuleGuidance(
    title="Unclassified accessibility issue",
    description="This issue does not have a detailed description yet.",
    remediation="Review the affected elements manually and adjust the HTML so it meets WCAG.",
    wcag="Unspecified",
    principle="Unspecified",
    level="Unspecified",
)

_NAME_ROLE_VALUE = "4.1.2 Name, Role, Value"
_INFO_RELATIONSHIPS = "1.3.1 Info and Relationships"

GUIDANCE_BY_ID: Dict[str, RuleGuidance] = {
    "color-contrast": RuleGuidance(
        "Insufficient text contrast",
        "Text and background colours do not have enough contrast.",
        "Adjust text or background colours to reach at least 4.5:1 for normal text.",
        "1.4.3 Contrast (Minimum)", PERCEIVABLE, "AA",
    ),
    "heading-order": RuleGuidance(
        "Headings skip levels",
        "Heading levels jump, which makes the page structure hard to follow.",
        "Use a heading hierarchy without skipped levels (for example h2 followed by h3).",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "page-has-main": RuleGuidance(
        "Page has no main region",
        "The page lacks a main content region that helps users and screen readers orient themselves.",
        "Wrap the primary content in a <main> element.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "region": RuleGuidance(
        "Content outside landmarks",
        "Part of the content is not contained in any landmark region.",
        "Place content in landmarks such as <main>, <header>, <nav> or <footer>, or label the region.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "image-alt": RuleGuidance(
        "Image without alternative text",
        "Screen readers cannot convey an image that has no alt text.",
        "Provide meaningful alt text for every informative image.",
        "1.1.1 Non-text Content", PERCEIVABLE,
    ),
    "label": RuleGuidance(
        "Form field without a label",
        "Users may not know what to enter into the field.",
        "Associate a <label> with every field (for + id).",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "link-name": RuleGuidance(
        "Link without a discernible name",
        "The link text does not reveal where the link goes.",
        "Give every link descriptive text or an aria-label.",
        "2.4.4 Link Purpose (In Context)", OPERABLE,
    ),
    "button-name": RuleGuidance(
        "Button without a discernible name",
        "It is unclear what the button does when activated.",
        "Give every button text or an aria-label that explains its action.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "duplicate-id": RuleGuidance(
        "Duplicate id attribute",
        "The same id is used more than once.",
        "Make every id on the page unique.",
        "4.1.1 Parsing", ROBUST,
    ),
    "html-has-lang": RuleGuidance(
        "Page language is missing",
        "Browsers and screen readers cannot determine the language of the content.",
        "Add a lang attribute to the html element (for example <html lang=\"en\">).",
        "3.1.1 Language of Page", UNDERSTANDABLE,
    ),
    "html-lang-valid": RuleGuidance(
        "Invalid page language",
        "The lang attribute holds an invalid or incomplete language code.",
        "Use a valid language code such as en or de.",
        "3.1.1 Language of Page", UNDERSTANDABLE,
    ),
    "document-title": RuleGuidance(
        "Page title is missing",
        "The page has no meaningful <title>.",
        "Add a descriptive <title> element in <head>.",
        "2.4.2 Page Titled", OPERABLE,
    ),
    "meta-viewport": RuleGuidance(
        "Zooming is restricted",
        "The viewport settings may stop the page from adapting on mobile devices.",
        "Use <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\"> without disabling zoom.",
        "1.4.10 Reflow", PERCEIVABLE, "AA",
    ),
    "aria-allowed-attr": RuleGuidance(
        "ARIA attribute not allowed",
        "The element carries ARIA attributes that are not permitted for its role.",
        "Remove or correct aria-* attributes to match the element's role.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "aria-required-attr": RuleGuidance(
        "Required ARIA attributes missing",
        "The role used requires attributes that are not present.",
        "Add the aria-* attributes the role requires.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "aria-valid-attr": RuleGuidance(
        "Invalid ARIA attribute",
        "An aria-* attribute is invalid or misspelled.",
        "Use only valid ARIA attributes.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "aria-valid-attr-value": RuleGuidance(
        "Invalid ARIA attribute value",
        "An ARIA attribute has a value that is not allowed.",
        "Correct the value so it matches the ARIA specification.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "aria-roles": RuleGuidance(
        "Invalid ARIA role",
        "The role attribute holds a value that is not a valid ARIA role.",
        "Use only valid ARIA roles.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "aria-allowed-role": RuleGuidance(
        "ARIA role not appropriate for element",
        "The role is not allowed on this element.",
        "Remove the role or use an element that natively has the intended semantics.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "aria-required-children": RuleGuidance(
        "Required child roles missing",
        "The role requires specific child elements that are missing.",
        "Add the child elements with the roles the parent role requires.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "aria-required-parent": RuleGuidance(
        "Required parent role missing",
        "The element's role must be contained in a specific parent role.",
        "Nest the element inside a parent with the required role.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "aria-hidden-body": RuleGuidance(
        "Body hidden from assistive technology",
        "aria-hidden=\"true\" on the body hides the whole page from screen readers.",
        "Remove aria-hidden from the body element.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "aria-unsupported-elements": RuleGuidance(
        "ARIA on unsupported element",
        "ARIA roles or attributes are used on elements that do not support them.",
        "Remove ARIA from elements that do not support it.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "input-button-name": RuleGuidance(
        "Input button without a name",
        "An input button has no text that describes its action.",
        "Set a value or aria-label on input buttons.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "label-title-only": RuleGuidance(
        "Field labelled only by title",
        "The field relies on the title attribute as its only label.",
        "Add a visible <label> to the field.",
        "3.3.2 Labels or Instructions", UNDERSTANDABLE,
    ),
    "form-field-multiple-labels": RuleGuidance(
        "Field has multiple labels",
        "More than one label points at the same field, which confuses screen readers.",
        "Keep a single label per field.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "form-field-multiple-labels-implicit": RuleGuidance(
        "Field has multiple implicit labels",
        "The field is wrapped by more than one label.",
        "Keep a single label per field.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "duplicate-id-aria": RuleGuidance(
        "Duplicate id referenced by ARIA",
        "An id used in ARIA references appears more than once.",
        "Make ids referenced by aria-labelledby and aria-describedby unique.",
        "4.1.1 Parsing", ROBUST,
    ),
    "focus-order-semantics": RuleGuidance(
        "Focusable element without a role",
        "An element in the focus order has no role that explains its purpose.",
        "Give focusable elements an appropriate semantic role.",
        "2.4.3 Focus Order", OPERABLE,
    ),
    "tabindex": RuleGuidance(
        "Positive tabindex",
        "A tabindex greater than 0 changes the natural focus order.",
        "Use tabindex 0 or -1 and rely on document order.",
        "2.4.3 Focus Order", OPERABLE,
    ),
    "bypass": RuleGuidance(
        "No way to skip repeated content",
        "Keyboard users cannot skip repeated blocks such as navigation.",
        "Add a skip link or landmarks so repeated content can be bypassed.",
        "2.4.1 Bypass Blocks", OPERABLE,
    ),
    "accesskeys": RuleGuidance(
        "Duplicate accesskey",
        "The same accesskey is assigned to more than one element.",
        "Make every accesskey unique or remove them.",
        "2.1.4 Character Key Shortcuts", OPERABLE,
    ),
    "landmark-one-main": RuleGuidance(
        "Page should have one main landmark",
        "The page has no main landmark or more than one.",
        "Use exactly one <main> element per page.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "landmark-unique": RuleGuidance(
        "Landmarks are not distinguishable",
        "Several landmarks of the same type share the same name.",
        "Give landmarks of the same type unique labels.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "list": RuleGuidance(
        "Invalid list structure",
        "A list contains elements other than list items.",
        "Only place <li> elements directly inside <ul> and <ol>.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "listitem": RuleGuidance(
        "List item outside a list",
        "An <li> element is not contained in <ul> or <ol>.",
        "Wrap list items in <ul> or <ol>.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "frame-title": RuleGuidance(
        "Frame without a title",
        "An iframe has no title describing its content.",
        "Add a descriptive title attribute to every iframe.",
        _NAME_ROLE_VALUE, ROBUST,
    ),
    "image-redundant-alt": RuleGuidance(
        "Redundant alternative text",
        "The alt text repeats text that is already next to the image.",
        "Write alt text that adds information or leave it empty for decorative images.",
        "1.1.1 Non-text Content", PERCEIVABLE,
    ),
    "empty-heading": RuleGuidance(
        "Empty heading",
        "A heading element has no text content.",
        "Add text to the heading or remove the element.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "empty-table-header": RuleGuidance(
        "Empty table header",
        "A table header cell has no text.",
        "Give every header cell descriptive text.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "table-duplicate-name": RuleGuidance(
        "Table caption duplicates summary",
        "The table caption and summary contain the same text.",
        "Use the caption for the title and the summary for additional context.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "td-headers-attr": RuleGuidance(
        "Broken table header references",
        "A cell's headers attribute points at cells outside the table.",
        "Reference only header cells of the same table.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "th-has-data-cells": RuleGuidance(
        "Table header without data cells",
        "A header cell does not describe any data cells.",
        "Remove unused header cells or fix the table structure.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "scope-attr-valid": RuleGuidance(
        "Invalid scope attribute",
        "The scope attribute is used incorrectly on a table cell.",
        "Use scope only on <th> with the values row, col, rowgroup or colgroup.",
        _INFO_RELATIONSHIPS, PERCEIVABLE,
    ),
    "video-caption": RuleGuidance(
        "Video without captions",
        "Deaf or hard-of-hearing users cannot follow the video's audio.",
        "Provide a captions track for every video.",
        "1.2.2 Captions (Prerecorded)", PERCEIVABLE,
    ),
    "audio-caption": RuleGuidance(
        "Audio without a transcript",
        "The audio content has no text alternative.",
        "Provide captions or a transcript for audio content.",
        "1.2.1 Audio-only and Video-only (Prerecorded)", PERCEIVABLE,
    ),
    "object-alt": RuleGuidance(
        "Embedded object without alternative text",
        "An <object> element has no text alternative.",
        "Add alternative text inside or on the object element.",
        "1.1.1 Non-text Content", PERCEIVABLE,
    ),
    "autocomplete-valid": RuleGuidance(
        "Invalid autocomplete value",
        "The autocomplete attribute does not identify the purpose of the field correctly.",
        "Use a valid autocomplete token such as email, name or tel.",
        "1.3.5 Identify Input Purpose", PERCEIVABLE, "AA",
    ),
}


def get_guidance(rule_id: Optional[str]) -> RuleGuidance:
    """Guidance for a rule id; never fails."""
    if not rule_id:
        return DEFAULT_GUIDANCE
    return GUIDANCE_BY_ID.get(rule_id, DEFAULT_GUIDANCE)


def get_wcag_level(rule_id: Optional[str], wcag: Optional[str] = None) -> str:
    """Conformance level for a rule, inferred from the criterion for unknown ids."""
    guidance = GUIDANCE_BY_ID.get(rule_id or "")
    if guidance is not None:
        return guidance.level
    if wcag and ("1.4.3" in wcag or "1.4.10" in wcag):
        return "AA"
    return DEFAULT_GUIDANCE.level
