from __future__ import annotations

MODEL_FAMILIES: tuple[str, ...] = (
    "gpt-5-codex",
    "codex-max",
    "codex",
    "gpt-5.2",
    "gpt-5.1",
)
DEFAULT_MODEL_FAMILY = "codex"

MAX_ACCOUNTS = 20
AUTH_FAILURE_THRESHOLD = 3

CODEX_BASE_URL = "https://chatgpt.com/backend-api"
RESPONSES_PATH = "/responses"
CODEX_RESPONSES_PATH = "/codex/responses"

CHATGPT_CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
CHATGPT_AUTHORIZE_URL = "https://auth.openai.com/oauth/authorize"
CHATGPT_TOKEN_URL = "https://auth.openai.com/oauth/token"
CHATGPT_REDIRECT_URI = "http://127.0.0.1:1455/auth/callback"
CHATGPT_SCOPE = "openid profile email offline_access"
CHATGPT_ACCOUNT_CLAIM_PATH = "https://api.openai.com/auth"
CHATGPT_ORIGINATOR = "codex_cli_rs"

HEADER_ACCOUNT_ID = "chatgpt-account-id"
HEADER_BETA = "OpenAI-Beta"
HEADER_ORIGINATOR = "originator"
HEADER_SESSION_ID = "session_id"
HEADER_CONVERSATION_ID = "conversation_id"
BETA_RESPONSES = "responses=experimental"

ACCOUNTS_FILE_NAME = "openai-codex-accounts.json"
FLAGGED_ACCOUNTS_FILE_NAME = "openai-codex-flagged-accounts.json"
LEGACY_FLAGGED_ACCOUNTS_FILE_NAME = "openai-codex-blocked-accounts.json"
