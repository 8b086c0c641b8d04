import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env once per process
load_dotenv()

# === Cohere keys ===
def get_cohere_key() -> str | None:
    return os.getenv("CO_API_KEY") or os.getenv("COHERE_API_KEY")

# === App paths & models ===
BASE_DIR = Path(__file__).resolve().parent.parent
DB_PATH = os.getenv("DB_PATH", str(BASE_DIR / "garmentops" / "garmentops.db"))

MODEL_NAME = os.getenv("MODEL_NAME", "command-r-plus")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0"))
# A hung model call is treated as a gateway failure after this many seconds.
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# Internal agent endpoints require X-Internal-Key when this is set.
INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY")

def ensure_dirs() -> None:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
