"""Shared defaults."""

DEFAULT_STEP_TIMEOUT_MS = 120_000
DEFAULT_MAX_RETRIES = 2
DEFAULT_MAX_STEPS = 500
DEFAULT_MAX_CONCURRENT_INSTANCES = 16

FALLBACK_AGENT = "analyst"

# Step-name patterns (fnmatch syntax) mapped to the agent that handles them
# when a step entry carries no explicit ``agent``.
DEFAULT_STEP_AGENTS = {
    "enhancement_classification": "analyst",
    "routing_decision": "system",
    "documentation_check": "analyst",
    "project_analysis": "architect",
    "architecture_decision": "architect",
}

KNOWN_AGENTS = (
    "analyst",
    "pm",
    "architect",
    "ux-expert",
    "dev",
    "qa",
    "sm",
    "po",
    "system",
)

CYCLE_ITEM_VARIABLE = "cycle_item"
CYCLE_INDEX_VARIABLE = "cycle_index"

EVENT_CHANNEL_PREFIX = "flowsmith"
