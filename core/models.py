"""
Data model shared by the probing, validation and repair components.

Evidence objects are created once per probe and never mutated afterwards;
validation outcomes are recomputed on every repair iteration.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union


class SearchType(Enum):
    """How a site's search results were obtained."""
    URL_QUERY = "url_query"
    DISCOVERED_URL = "discovered_url"
    API = "api"
    API_INTERCEPTED = "api_intercepted"
    INTERACTIVE_API_DISCOVERY = "interactive_api_discovery"

    @property
    def is_api(self) -> bool:
        return self in _API_SEARCH_TYPES

    def describe(self) -> str:
        """Human readable explanation handed to the authoring collaborator."""
        try:
            return _SEARCH_TYPE_DESCRIPTIONS[self]
        except KeyError:
            raise ValueError(f"Unhandled search type: {self!r}")


_API_SEARCH_TYPES = frozenset({
    SearchType.API,
    SearchType.API_INTERCEPTED,
    SearchType.INTERACTIVE_API_DISCOVERY,
})

_SEARCH_TYPE_DESCRIPTIONS = {
    SearchType.URL_QUERY: "Search results are served by substituting the query into the URL template.",
    SearchType.DISCOVERED_URL: "Search URL pattern was discovered by submitting the site's search form.",
    SearchType.API: "Search results come from a JSON API discovered by typing into the search box.",
    SearchType.API_INTERCEPTED: "A JSON search API was intercepted while the results page loaded.",
    SearchType.INTERACTIVE_API_DISCOVERY: "No URL pattern worked; the API was found by live interaction only.",
}


class CaptchaProvider(Enum):
    DATADOME = "datadome"
    CLOUDFLARE = "cloudflare"
    HCAPTCHA = "hcaptcha"
    RECAPTCHA = "recaptcha"
    PERIMETERX = "perimeterx"
    UNKNOWN = "unknown"
    NONE = "none"


@dataclass(frozen=True)
class CaptchaVerdict:
    blocked: bool
    provider: CaptchaProvider = CaptchaProvider.NONE


@dataclass(frozen=True)
class NotFound:
    """Explicit result of a selector probe that matched nothing."""
    selector: str
    reason: str = "no element matched"

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class LinkSample:
    href: str
    text: str


@dataclass(frozen=True)
class SearchAffordance:
    """Whether the page exposes a search box and how to reach it."""
    has_search: bool = False
    input_locator: Optional[str] = None
    form_action: Optional[str] = None
    input_name: Optional[str] = None


@dataclass(frozen=True)
class SiteEvidence:
    """Structural fingerprint of a site's landing page."""
    hostname: str
    input_url: str
    final_url: str
    title: str = ""
    meta_description: str = ""
    h1: str = ""
    jsonld_types: FrozenSet[str] = frozenset()
    links_sample: Tuple[LinkSample, ...] = ()
    search: SearchAffordance = field(default_factory=SearchAffordance)
    cookies: Tuple[Dict[str, Any], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["jsonld_types"] = sorted(self.jsonld_types)
        data["links_sample"] = [asdict(link) for link in self.links_sample]
        data["cookies"] = len(self.cookies)
        return data


@dataclass(frozen=True)
class ProbeHealth:
    healthy: bool
    score: int
    issues: Tuple[str, ...] = ()


@dataclass
class TitleCandidate:
    selector: str
    text: str


@dataclass
class ResultItem:
    """One repeating result element found on a search results page."""
    index: int
    item_selector: str
    has_link: bool = False
    link_href: Optional[str] = None
    link_text: str = ""
    link_selector: Optional[str] = None
    has_image: bool = False
    img_src: Optional[str] = None
    img_selector: Optional[str] = None
    title_candidates: List[TitleCandidate] = field(default_factory=list)
    title_link: Optional[str] = None
    text_content: str = ""
    html_snippet: str = ""


@dataclass
class ResultPattern:
    selector: str
    count: int
    score: float
    items: List[ResultItem] = field(default_factory=list)
    common_parent_selector: Optional[str] = None
    items_are_direct_children: bool = False


@dataclass
class ApiDescriptor:
    """Location of search results inside a captured JSON API exchange."""
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body_template: Optional[str] = None
    url_pattern: Optional[str] = None
    json_path: Optional[str] = None
    fields: Dict[str, Optional[str]] = field(default_factory=dict)
    response_structure: str = "unknown"
    sample: Any = None
    source: str = "network"

    @property
    def item_prefix(self) -> str:
        """Path to a single item with the loop placeholder in place."""
        return self.json_path or "[$i]"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FieldSelectors:
    title: Optional[str] = None
    url: Optional[str] = None
    url_attr: Optional[str] = None
    cover: Optional[str] = None
    cover_attr: Optional[str] = None
    cover_needs_extraction: bool = False


@dataclass
class DomLoopStructure:
    """Where repeating results live and how to iterate over them."""
    container_selector: str
    child_selector: str
    indices: List[int]
    is_consecutive: bool
    loop_base: str
    field_selectors: FieldSelectors = field(default_factory=FieldSelectors)
    total_children: int = 0
    recommendation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LoopInferenceFailure:
    reason: str

    def __bool__(self) -> bool:
        return False


@dataclass
class SearchEvidence:
    search_url: str
    query: str
    search_type: SearchType = SearchType.URL_QUERY
    result_container: Optional[str] = None
    items: List[ResultItem] = field(default_factory=list)
    total_found: int = 0
    api: Optional[ApiDescriptor] = None
    dom_structure: Optional[DomLoopStructure] = None
    url_pattern: Optional[str] = None
    loop_failure: Optional[str] = None
    error: Optional[str] = None

    @property
    def has_results(self) -> bool:
        return self.total_found > 0 or self.api is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["search_type"] = self.search_type.value
        data["search_type_description"] = self.search_type.describe()
        return data


@dataclass(frozen=True)
class DetailEvidence:
    url: str
    final_url: str
    title: str = ""
    h1: str = ""
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_image: Optional[str] = None
    canonical: Optional[str] = None
    meta_description: Optional[str] = None
    jsonld: Tuple[Dict[str, Any], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["jsonld"] = list(self.jsonld)
        return data


@dataclass(frozen=True)
class ValidationIssue:
    """A hard validation failure; ``result_index`` is 1-based, None for output-level issues."""
    kind: str
    message: str
    result_index: Optional[int] = None

    def __str__(self) -> str:
        if self.result_index is None:
            return self.message
        return f"Result {self.result_index}: {self.message}"


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating engine output. Never mutated after creation."""
    valid: Tuple[Any, ...] = ()
    issues: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[str, ...] = ()
    total: int = 0
    accepted: bool = False

    @property
    def messages(self) -> List[str]:
        return [str(issue) for issue in self.issues]


@dataclass
class SelectorAlternative:
    selector: str
    count: int
    sample: str = ""
    confidence: str = "medium"


@dataclass
class SuggestedFix:
    step_index: int
    field: str
    old_value: Any
    new_value: Any
    reason: str = ""


@dataclass
class SelectorCheck:
    """Diagnosis of one recipe step's locator against the live page."""
    step_index: int
    command: str
    locator: Optional[str]
    status: str
    found: int = 0
    sample: Optional[str] = None
    alternatives: List[SelectorAlternative] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class DebugAnalysis:
    working: List[SelectorCheck] = field(default_factory=list)
    failing: List[SelectorCheck] = field(default_factory=list)
    suggested_fixes: List[SuggestedFix] = field(default_factory=list)
    page_url: Optional[str] = None
    page_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FixAction(Enum):
    REWRITE = "rewrite"
    PATCH = "patch"
    NONE = "none"


@dataclass(frozen=True)
class Patch:
    step_index: int
    field: str
    new_value: Any


@dataclass
class FixResponse:
    action: FixAction
    steps: Optional[List[Dict[str, Any]]] = None
    patches: List[Patch] = field(default_factory=list)
    raw: Any = None


@dataclass
class EngineResult:
    """What the execution collaborator returned for one run."""
    success: bool
    results: Union[List[Dict[str, Any]], Dict[str, Any], None] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None
    error_type: Optional[str] = None
    exit_code: Optional[int] = None


@dataclass
class RepairAttempt:
    iteration: int
    engine_result: EngineResult
    validation: Optional[ValidationOutcome] = None
    debug: Optional[DebugAnalysis] = None
    fix_action: FixAction = FixAction.NONE
    engine_error: Optional[Any] = None


class RepairState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    VALIDATING = "validating"
    DEBUGGING = "debugging"
    FIXING = "fixing"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass
class RepairSession:
    """Conversational fix session owned by a single repair loop."""
    session_id: str
    site: str
    step_type: str
    turns: int = 0
    open: bool = True


@dataclass
class RepairOutcome:
    success: bool
    state: RepairState
    iterations: int
    attempts: List[RepairAttempt] = field(default_factory=list)
    recipe: Optional[Dict[str, Any]] = None

    @property
    def all_issues(self) -> List[str]:
        issues = []
        for attempt in self.attempts:
            if attempt.validation is not None:
                issues.extend(attempt.validation.messages)
        return issues
