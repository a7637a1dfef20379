import os
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_DIR = os.path.join(BASE_DIR, "db")
HISTORY_DIR = os.path.join(DB_DIR, "history")
HISTORY_DB_PATH = os.path.join(HISTORY_DIR, "history.db")

PROMPTS_DIR = os.path.join(BASE_DIR, "prompts")
DEFAULT_SYSTEM_PROMPT_PATH = os.path.join(PROMPTS_DIR, "default_system_prompt.md")
