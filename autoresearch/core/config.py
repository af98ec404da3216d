from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Global Constants
QUEUE_NAME = "research-automation"

# Directory Configuration
BASE_DIR = Path(__file__).parent.parent.parent
GENERATED_DIR = BASE_DIR / "generated"
LOGS_DIR = GENERATED_DIR / "logs"

# Ensure directories exist
GENERATED_DIR.mkdir(exist_ok=True)
LOGS_DIR.mkdir(exist_ok=True)

# Research settings by depth
RESEARCH_SETTINGS = {
    "quick": {
        "max_queries": 2,
        "results_per_query": 5,
        "max_total_sources": 10,
    },
    "medium": {
        "max_queries": 3,
        "results_per_query": 8,
        "max_total_sources": 15,
    },
    "deep": {
        "max_queries": 5,
        "results_per_query": 10,
        "max_total_sources": 25,
    },
}

# Clarification wire format: research_focus:<job_id>:<selection>
CALLBACK_PREFIX = "research_focus"
MAX_FOCUS_OPTIONS = 4
ALL_FOCUS_AREAS_TEXT = "comprehensive overview covering all aspects"
DEFAULT_FOCUS_TEXT = "general overview"
DEFAULT_CLARIFICATION_QUESTION = "What would you like me to focus on?"

# Limits applied to provider payloads
MAX_SEARCH_QUERIES = 5
SYNTHESIS_SOURCE_LIMIT = 15
SOURCE_CONTENT_CHARS = 2000
NOTE_SUMMARY_CHARS = 400
