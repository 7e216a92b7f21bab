"""Goal Parser - turns free-text goals into structured ParsedGoals.

Recognition is two-staged: known phrasings are matched against goal
templates first; anything else falls back to keyword inference over the
normalized text. Parsing never raises on odd input.
"""

import logging
import re

from orchestration.config import settings
from orchestration.planning.models import (
    AgentType,
    GoalComplexity,
    GoalEntity,
    GoalIntent,
    GoalMetadata,
    GoalTemplate,
    ParsedGoal,
    RequiredCapability,
)

logger = logging.getLogger(__name__)

Cap = RequiredCapability


def default_templates() -> list[GoalTemplate]:
    """Built-in goal templates, in matching order."""
    return [
        GoalTemplate(
            id="api-for-resource",
            name="API for resource",
            pattern=re.compile(r"(?:build|create|implement)\s+(?:a\s+)?(?:rest\s+)?api\s+for\s+(?P<resource>\w+)"),
            intent=GoalIntent.BUILD,
            capabilities=[Cap.API, Cap.CRUD, Cap.VALIDATION, Cap.DATABASE, Cap.TESTING],
            complexity=GoalComplexity.MODERATE,
            description="REST API with CRUD operations for a resource",
        ),
        GoalTemplate(
            id="add-authentication",
            name="Add authentication",
            pattern=re.compile(r"(?:add|implement|create)\s+(?:user\s+)?authentication"),
            intent=GoalIntent.ADD,
            capabilities=[Cap.AUTHENTICATION, Cap.SECURITY, Cap.API, Cap.DATABASE, Cap.TESTING],
            complexity=GoalComplexity.COMPLEX,
            description="User authentication with sessions or tokens",
        ),
        GoalTemplate(
            id="add-rbac",
            name="Add role-based access control",
            pattern=re.compile(r"(?:add|implement|create)\s+(?:rbac|role.based|permission|authorization)"),
            intent=GoalIntent.ADD,
            capabilities=[Cap.AUTHORIZATION, Cap.SECURITY, Cap.DATABASE, Cap.TESTING],
            complexity=GoalComplexity.COMPLEX,
            description="Roles and permissions enforced on protected operations",
        ),
        GoalTemplate(
            id="integrate-with-system",
            name="Integrate with external system",
            pattern=re.compile(r"integrate\s+with\s+(?P<system>\w+)"),
            intent=GoalIntent.ADD,
            capabilities=[Cap.INTEGRATION, Cap.API, Cap.VALIDATION, Cap.TESTING],
            complexity=GoalComplexity.COMPLEX,
            description="Connector to a third-party service",
        ),
        GoalTemplate(
            id="add-realtime",
            name="Add real-time updates",
            pattern=re.compile(r"(?:add|implement|create)\s+(?:realtime|real.time|websocket|live)"),
            intent=GoalIntent.ADD,
            capabilities=[Cap.REAL_TIME, Cap.WEBSOCKET, Cap.API, Cap.TESTING],
            complexity=GoalComplexity.MODERATE,
            description="Push updates to clients over websockets",
        ),
        GoalTemplate(
            id="build-ui",
            name="Build UI for feature",
            pattern=re.compile(
                r"(?:build|create|implement)\s+(?:ui|interface|dashboard|form|page)\s+for\s+(?P<feature>\w+)"
            ),
            intent=GoalIntent.BUILD,
            capabilities=[Cap.UI, Cap.API, Cap.TESTING],
            complexity=GoalComplexity.MODERATE,
            description="User interface backed by the API",
        ),
    ]


# Named template groups -> entity type
GROUP_ENTITY_TYPES = {
    "resource": "resource",
    "feature": "feature",
    "system": "integration",
}

INTENT_PATTERNS: list[tuple[re.Pattern[str], GoalIntent]] = [
    (re.compile(r"^(?:build|create|develop|implement|make|design|set up|setup)\b"), GoalIntent.BUILD),
    (re.compile(r"^(?:add|include|integrate|attach|enable|extend|introduce)\b"), GoalIntent.ADD),
    (re.compile(r"^(?:improve|enhance|optimi[sz]e|refactor|upgrade|speed up)\b"), GoalIntent.IMPROVE),
    (re.compile(r"^(?:fix|repair|resolve|debug|patch|correct)\b"), GoalIntent.FIX),
]

# Keyword group -> (pattern, capabilities it implies)
KEYWORD_GROUPS: dict[str, tuple[re.Pattern[str], list[RequiredCapability]]] = {
    "api": (
        re.compile(r"\b(?:api|apis|rest|restful|endpoints?|graphql|crud)\b"),
        [Cap.API, Cap.CRUD],
    ),
    "authentication": (
        re.compile(r"\b(?:auth|authentication|authenticate|login|logins|signin|sign-in|oauth|jwt|sso|passwords?)\b"),
        [Cap.AUTHENTICATION, Cap.SECURITY],
    ),
    "authorization": (
        re.compile(r"\b(?:authorization|authorize|rbac|roles?|role-based|permissions?|acl)\b"),
        [Cap.AUTHORIZATION, Cap.SECURITY],
    ),
    "real_time": (
        re.compile(r"\b(?:real-time|realtime|live|websockets?|sockets?|push|streaming)\b"),
        [Cap.REAL_TIME, Cap.WEBSOCKET],
    ),
    "database": (
        re.compile(r"\b(?:database|databases|db|schema|persist\w*|storage|sql|postgres\w*|mongo\w*|tables?)\b"),
        [Cap.DATABASE],
    ),
    "ui": (
        re.compile(r"\b(?:ui|interface|dashboard|frontend|front-end|pages?|forms?|screens?|portal)\b"),
        [Cap.UI],
    ),
    "testing": (
        re.compile(r"\b(?:tests?|testing|coverage|qa)\b"),
        [Cap.TESTING],
    ),
    "integration": (
        re.compile(r"\b(?:integrate|integrates|integration|integrations|webhooks?|third-party|connector)\b"),
        [Cap.INTEGRATION],
    ),
    "documentation": (
        re.compile(r"\b(?:docs|documentation|document|readme|guide)\b"),
        [Cap.DOCUMENTATION],
    ),
    "validation": (
        re.compile(r"\b(?:validation|validate|validated|sanitize\w*)\b"),
        [Cap.VALIDATION],
    ),
}

DEFAULT_CAPABILITIES = [Cap.API, Cap.CRUD]

CAPABILITY_AGENTS: dict[RequiredCapability, list[AgentType]] = {
    Cap.API: [AgentType.API],
    Cap.CRUD: [AgentType.MODELS, AgentType.API],
    Cap.DATABASE: [AgentType.MODELS, AgentType.DATABASE],
    Cap.AUTHENTICATION: [AgentType.AUTH],
    Cap.AUTHORIZATION: [AgentType.RBAC],
    Cap.SECURITY: [AgentType.SECURITY],
    Cap.VALIDATION: [AgentType.QUALITY],
    Cap.REAL_TIME: [AgentType.REALTIME],
    Cap.WEBSOCKET: [AgentType.REALTIME],
    Cap.UI: [AgentType.UI],
    Cap.INTEGRATION: [AgentType.INTEGRATION],
    Cap.TESTING: [AgentType.TEST],
    Cap.DOCUMENTATION: [AgentType.DOCUMENTATION],
    Cap.CACHING: [AgentType.API],
    Cap.LOGGING: [AgentType.QUALITY],
}

# Capabilities that count towards complexity; the rest ride along with them
CORE_CAPABILITIES = {
    Cap.API,
    Cap.DATABASE,
    Cap.AUTHENTICATION,
    Cap.AUTHORIZATION,
    Cap.REAL_TIME,
    Cap.UI,
    Cap.INTEGRATION,
    Cap.DOCUMENTATION,
}

SHORT_GOAL_WORDS = 12

SECURITY_TERMS = ("authentication", "authorization", "oauth", "jwt", "rbac", "sso", "permissions")
UI_NOUNS = ("dashboard", "form", "page", "interface", "screen", "portal", "ui")
ENTITY_STOPWORDS = {"the", "a", "an", "all", "each", "every", "my", "our", "your", "their", "its"}

RESOURCE_PATTERN = re.compile(r"(?<!integrate )(?<!integration )\b(?:for|with)\s+(?:(?:the|a|an|all|our|my)\s+)?([a-z][\w-]*)")
INTEGRATION_PATTERN = re.compile(r"\bintegrat(?:e|ion)\s+with\s+([a-z][\w-]*)")


class GoalParser:
    """Parses goals into intent, capabilities, entities and complexity."""

    def __init__(self, templates: list[GoalTemplate] | None = None, long_goal_word_count: int | None = None):
        self._templates = list(templates) if templates is not None else default_templates()
        if long_goal_word_count is None:
            long_goal_word_count = settings.long_goal_word_count
        if long_goal_word_count < 1:
            raise ValueError("long_goal_word_count must be at least 1")
        self.long_goal_word_count = long_goal_word_count

        self._capability_words = {
            word
            for pattern, _ in KEYWORD_GROUPS.values()
            for word in re.findall(r"[a-z][a-z-]+", pattern.pattern)
        }

    def add_template(self, template: GoalTemplate) -> None:
        """Register a custom template. It is tried after the existing ones."""
        self._templates.append(template)
        logger.info(f"Registered goal template: {template.id}")

    def get_templates(self) -> list[GoalTemplate]:
        return list(self._templates)

    # =========================================================================
    # Parsing
    # =========================================================================

    @staticmethod
    def normalize(goal: str) -> str:
        text = (goal or "").lower().strip()
        text = re.sub(r"[^\w\s-]", "", text)
        return re.sub(r"\s+", " ", text).strip()

    def parse_goal(self, goal: str) -> ParsedGoal:
        """Parse a goal. Known phrasings win over keyword inference."""
        normalized = self.normalize(goal)
        word_count = len(normalized.split())

        for template in self._templates:
            match = template.pattern.search(normalized)
            if match:
                parsed = self._from_template(goal or "", normalized, template, match, word_count)
                logger.debug(
                    f"Goal matched template {template.id}: complexity={parsed.estimated_complexity.value}, "
                    f"capabilities={[c.value for c in parsed.capabilities]}"
                )
                return parsed

        parsed = self._infer(goal or "", normalized, word_count)
        logger.debug(
            f"Goal parsed by keywords: intent={parsed.intent.value}, complexity={parsed.estimated_complexity.value}, "
            f"confidence={parsed.confidence:.2f}"
        )
        return parsed

    def _from_template(
        self,
        goal: str,
        normalized: str,
        template: GoalTemplate,
        match: re.Match[str],
        word_count: int,
    ) -> ParsedGoal:
        entities = []
        for group, value in match.groupdict().items():
            if value and group in GROUP_ENTITY_TYPES:
                entities.append(GoalEntity(type=GROUP_ENTITY_TYPES[group], name=value.lower()))
        captured = bool(entities)
        entities = _unique(entities + self._extract_entities(normalized))

        capabilities = list(template.capabilities)
        complexity = template.complexity
        if word_count >= self.long_goal_word_count:
            complexity = GoalComplexity.VERY_COMPLEX

        return ParsedGoal(
            original_goal=goal,
            normalized_goal=normalized,
            intent=template.intent,
            capabilities=capabilities,
            entities=entities,
            estimated_complexity=complexity,
            suggested_agents=template.suggested_agents or suggest_agents(capabilities),
            confidence=0.95 if captured else 0.9,
            metadata=build_metadata(template.intent, capabilities),
        )

    def _infer(self, goal: str, normalized: str, word_count: int) -> ParsedGoal:
        intent = infer_intent(normalized)

        capabilities: list[RequiredCapability] = []
        matched_groups = 0
        for pattern, implied in KEYWORD_GROUPS.values():
            if pattern.search(normalized):
                matched_groups += 1
                capabilities.extend(implied)

        defaulted = not capabilities
        if defaulted:
            capabilities = list(DEFAULT_CAPABILITIES)
            confidence = 0.4
        else:
            confidence = min(0.5 + 0.1 * matched_groups, 0.85)

        capabilities = list(dict.fromkeys(capabilities))
        complexity = self.assess_complexity(capabilities, word_count, defaulted=defaulted)

        return ParsedGoal(
            original_goal=goal,
            normalized_goal=normalized,
            intent=intent,
            capabilities=capabilities,
            entities=self._extract_entities(normalized),
            estimated_complexity=complexity,
            suggested_agents=suggest_agents(capabilities),
            confidence=confidence,
            metadata=build_metadata(intent, capabilities),
        )

    def assess_complexity(
        self,
        capabilities: list[RequiredCapability],
        word_count: int,
        defaulted: bool = False,
    ) -> GoalComplexity:
        """Score complexity from the core capability count and goal length."""
        if word_count >= self.long_goal_word_count:
            return GoalComplexity.VERY_COMPLEX

        core = set() if defaulted else CORE_CAPABILITIES.intersection(capabilities)
        security_sensitive = bool({Cap.AUTHENTICATION, Cap.AUTHORIZATION} & core)

        if {Cap.AUTHENTICATION, Cap.AUTHORIZATION, Cap.REAL_TIME} <= core or len(core) >= 5:
            return GoalComplexity.VERY_COMPLEX
        if len(core) >= 3 or security_sensitive:
            return GoalComplexity.COMPLEX
        if core:
            return GoalComplexity.MODERATE
        if word_count > SHORT_GOAL_WORDS:
            return GoalComplexity.MODERATE
        return GoalComplexity.SIMPLE

    def _extract_entities(self, normalized: str) -> list[GoalEntity]:
        entities: list[GoalEntity] = []
        words = set(normalized.split())

        for name in RESOURCE_PATTERN.findall(normalized):
            if name not in ENTITY_STOPWORDS and name not in self._capability_words:
                entities.append(GoalEntity(type="resource", name=name))

        for term in SECURITY_TERMS:
            if term in words:
                entities.append(GoalEntity(type="security", name=term))

        for system in INTEGRATION_PATTERN.findall(normalized):
            entities.append(GoalEntity(type="integration", name=system))

        for noun in UI_NOUNS:
            if noun in words:
                entities.append(GoalEntity(type="feature", name=noun))

        return _unique(entities)


def infer_intent(normalized: str) -> GoalIntent:
    """Intent from the leading verb; BUILD when nothing matches."""
    for pattern, intent in INTENT_PATTERNS:
        if pattern.search(normalized):
            return intent
    return GoalIntent.BUILD


def suggest_agents(capabilities: list[RequiredCapability]) -> list[AgentType]:
    """Agents covering ``capabilities``; a test agent joins multi-agent goals."""
    agents: list[AgentType] = []
    for capability in capabilities:
        agents.extend(CAPABILITY_AGENTS.get(capability, []))
    agents = list(dict.fromkeys(agents))
    if len(agents) > 1 and AgentType.TEST not in agents:
        agents.append(AgentType.TEST)
    return agents


def build_metadata(intent: GoalIntent, capabilities: list[RequiredCapability]) -> GoalMetadata:
    caps = set(capabilities)
    return GoalMetadata(
        requires_auth=bool({Cap.AUTHENTICATION, Cap.AUTHORIZATION} & caps),
        requires_database=bool({Cap.DATABASE, Cap.CRUD} & caps),
        requires_ui=Cap.UI in caps,
        requires_testing=Cap.TESTING in caps,
        requires_documentation=Cap.DOCUMENTATION in caps,
        is_integration=Cap.INTEGRATION in caps,
        affects_existing_code=intent != GoalIntent.BUILD,
    )


def _unique(entities: list[GoalEntity]) -> list[GoalEntity]:
    seen: set[tuple[str, str]] = set()
    unique = []
    for entity in entities:
        key = (entity.type, entity.name)
        if key not in seen:
            seen.add(key)
            unique.append(entity)
    return unique
