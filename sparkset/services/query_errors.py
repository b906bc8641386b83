"""
Caller-facing error taxonomy.

Upstream failures arrive in inconsistent shapes: typed pipeline errors,
provider SDK exceptions, driver messages, request validation. They are
classified by an ordered rule list into one of eight stable codes. The
ordering is heuristic and is covered rule by rule in the tests.
"""
from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence


class QueryErrorCode(str, enum.Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    CONVERSATION_NOT_FOUND = "CONVERSATION_NOT_FOUND"
    CONVERSATION_FORBIDDEN = "CONVERSATION_FORBIDDEN"
    RATE_LIMIT = "RATE_LIMIT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


LEGACY_QUERY_ERROR_CODES: Dict[str, QueryErrorCode] = {
    "E_RATE_LIMIT_EXCEEDED": QueryErrorCode.RATE_LIMIT,
    "E_VALIDATION_ERROR": QueryErrorCode.VALIDATION_ERROR,
    "E_BUSINESS_ERROR": QueryErrorCode.VALIDATION_ERROR,
    "E_DATABASE_ERROR": QueryErrorCode.DATABASE_ERROR,
    "E_CONFIGURATION_ERROR": QueryErrorCode.CONFIGURATION_ERROR,
    "E_INTERNAL_ERROR": QueryErrorCode.INTERNAL_ERROR,
    "E_AUTHENTICATION_FAILED": QueryErrorCode.UNAUTHENTICATED,
    "E_AUTHORIZATION_FAILED": QueryErrorCode.CONVERSATION_FORBIDDEN,
    "E_NOT_FOUND": QueryErrorCode.CONVERSATION_NOT_FOUND,
    "E_EXTERNAL_SERVICE_ERROR": QueryErrorCode.INTERNAL_ERROR,
}

QUERY_ERROR_HTTP_STATUS: Dict[QueryErrorCode, int] = {
    QueryErrorCode.UNAUTHENTICATED: 401,
    QueryErrorCode.CONVERSATION_FORBIDDEN: 403,
    QueryErrorCode.CONVERSATION_NOT_FOUND: 404,
    QueryErrorCode.RATE_LIMIT: 429,
    QueryErrorCode.VALIDATION_ERROR: 400,
    QueryErrorCode.DATABASE_ERROR: 400,
    QueryErrorCode.CONFIGURATION_ERROR: 400,
    QueryErrorCode.INTERNAL_ERROR: 500,
}

QUERY_ERROR_TITLES: Dict[QueryErrorCode, str] = {
    QueryErrorCode.UNAUTHENTICATED: "Authentication failed",
    QueryErrorCode.CONVERSATION_NOT_FOUND: "Not found",
    QueryErrorCode.CONVERSATION_FORBIDDEN: "Forbidden",
    QueryErrorCode.RATE_LIMIT: "Rate limit exceeded",
    QueryErrorCode.VALIDATION_ERROR: "Validation error",
    QueryErrorCode.DATABASE_ERROR: "Database error",
    QueryErrorCode.CONFIGURATION_ERROR: "Configuration error",
    QueryErrorCode.INTERNAL_ERROR: "Internal server error",
}

QUERY_ERROR_MESSAGES: Dict[QueryErrorCode, str] = {
    QueryErrorCode.UNAUTHENTICATED: "User not authenticated",
    QueryErrorCode.CONVERSATION_NOT_FOUND: "Conversation not found, please start a new conversation to continue.",
    QueryErrorCode.CONVERSATION_FORBIDDEN: "Conversation does not belong to the current user",
    QueryErrorCode.RATE_LIMIT: (
        "Query service is temporarily unavailable due to rate limit. Please try again in a while."
    ),
    QueryErrorCode.VALIDATION_ERROR: (
        "Request validation failed. Please check your question, datasource, and AI provider settings."
    ),
    QueryErrorCode.DATABASE_ERROR: (
        "Database error. Please ensure the datasource schema is synced and AI generated SQL "
        "only uses existing tables/columns."
    ),
    QueryErrorCode.CONFIGURATION_ERROR: "Please configure a datasource and AI provider before querying.",
    QueryErrorCode.INTERNAL_ERROR: "A server error occurred while executing query. Please retry later.",
}

DEFAULT_RATE_LIMIT_SECONDS = 10
MAX_RATE_LIMIT_SECONDS = 120

RATE_LIMIT_RE = re.compile(r"rate\s*limit|too\s*many\s*requests|retry\s+after|retry\s+in|429|限流|频率|超限", re.I)
DATABASE_RE = re.compile(
    r"table.*does not exist|unknown column|table.*not found|unknown database|sql syntax|数据库|不存在|不合法|"
    r"doesn't exist|not exist|syntax error|access denied|denied",
    re.I,
)
AUTHENTICATION_RE = re.compile(
    r"not authenticated|authentication failed|authentication token|access token|token expired|expired token|"
    r"invalid token|please log(?:in|in again)|please re.?login|login required|请重新登录|未登录|未认证|未授权",
    re.I,
)
CONFIGURATION_RE = re.compile(
    r"no datasource|selected datasource|no ai provider|selected ai provider|datasource.*not found|"
    r"provider.*not found|no schema|schema.*not synced|no tables found|未配置|未设置|无可用|未同步|未同步到|"
    r"暂无表|表结构|未找到表",
    re.I,
)
CONVERSATION_NOT_FOUND_RE = re.compile(r"conversation.*not found|not\s+found.*conversation", re.I)

_UNIT = r"(seconds?|secs?|s|minutes?|mins?|m|秒|分钟|min)?"
_RETRY_AFTER_RE = re.compile(r"(?:retry|wait|after|in|wait\s*after|之后|请)\s+(\d+)\s*" + _UNIT, re.I)
_RETRY_AFTER_ZH_RE = re.compile(r"请[\u4e00-\u9fff\s]{0,12}(\d+)\s*" + _UNIT, re.I)
_MINUTE_UNIT_RE = re.compile(r"(minutes?|mins?|m|分钟|min)", re.I)


@dataclass
class QueryErrorEnvelope:
    status: int
    payload: Dict[str, Any]

    @property
    def code(self) -> str:
        return self.payload["code"]

    @property
    def retry_after(self) -> Optional[int]:
        return self.payload.get("retryAfter")

    def headers(self) -> Dict[str, str]:
        if self.status == 429 and self.retry_after:
            return {"Retry-After": str(self.retry_after)}
        return {}


def normalize_query_error_code(raw_code: Any) -> Optional[QueryErrorCode]:
    if not isinstance(raw_code, str):
        return None
    normalized = raw_code.strip().upper()
    if not normalized:
        return None
    try:
        return QueryErrorCode(normalized)
    except ValueError:
        return LEGACY_QUERY_ERROR_CODES.get(normalized)


def parse_rate_limit_retry_after(error_message: str, fallback: int = DEFAULT_RATE_LIMIT_SECONDS) -> int:
    """Extract a retry hint in seconds from a provider message, clamped to 1..120."""
    if not error_message:
        return fallback
    match = _RETRY_AFTER_RE.search(error_message) or _RETRY_AFTER_ZH_RE.search(error_message)
    if not match:
        return fallback
    raw_seconds = int(match.group(1))
    if raw_seconds <= 0:
        return fallback
    unit = match.group(2)
    seconds = raw_seconds * 60 if unit and _MINUTE_UNIT_RE.search(unit) else raw_seconds
    return min(MAX_RATE_LIMIT_SECONDS, max(1, seconds))


def _coerce_status(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


# ---------------------------
# Classification rules
# ---------------------------

@dataclass
class ErrorSignal:
    message: str
    code: Optional[QueryErrorCode]
    status: Optional[float]


# How the envelope message is chosen once a rule fires.
KEEP_MESSAGE = "keep"
DEFAULT_MESSAGE = "default"
APPEND_GUIDANCE = "append"


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    code: QueryErrorCode
    matches: Callable[[ErrorSignal], bool]
    message_policy: str = DEFAULT_MESSAGE


def _status_between(signal: ErrorSignal, low: int, high: Optional[int] = None) -> bool:
    if not signal.status:
        return False
    return signal.status >= low and (high is None or signal.status < high)


CLASSIFICATION_RULES: Sequence[ClassificationRule] = (
    ClassificationRule(
        "rate_limit",
        QueryErrorCode.RATE_LIMIT,
        lambda s: s.code == QueryErrorCode.RATE_LIMIT or s.status == 429 or bool(RATE_LIMIT_RE.search(s.message)),
    ),
    ClassificationRule(
        "unauthenticated",
        QueryErrorCode.UNAUTHENTICATED,
        lambda s: s.code == QueryErrorCode.UNAUTHENTICATED or s.status == 401 or bool(AUTHENTICATION_RE.search(s.message)),
        KEEP_MESSAGE,
    ),
    ClassificationRule(
        "forbidden",
        QueryErrorCode.CONVERSATION_FORBIDDEN,
        lambda s: s.code == QueryErrorCode.CONVERSATION_FORBIDDEN or s.status == 403,
        KEEP_MESSAGE,
    ),
    ClassificationRule(
        "not_found",
        QueryErrorCode.CONVERSATION_NOT_FOUND,
        lambda s: s.code == QueryErrorCode.CONVERSATION_NOT_FOUND
        or s.status == 404
        or bool(CONVERSATION_NOT_FOUND_RE.search(s.message)),
        KEEP_MESSAGE,
    ),
    ClassificationRule(
        "database",
        QueryErrorCode.DATABASE_ERROR,
        lambda s: s.code == QueryErrorCode.DATABASE_ERROR or bool(DATABASE_RE.search(s.message)),
        APPEND_GUIDANCE,
    ),
    ClassificationRule(
        "configuration",
        QueryErrorCode.CONFIGURATION_ERROR,
        lambda s: s.code == QueryErrorCode.CONFIGURATION_ERROR or bool(CONFIGURATION_RE.search(s.message)),
        KEEP_MESSAGE,
    ),
    ClassificationRule(
        "validation",
        QueryErrorCode.VALIDATION_ERROR,
        lambda s: s.code == QueryErrorCode.VALIDATION_ERROR or s.status == 400,
    ),
    ClassificationRule("server_status", QueryErrorCode.INTERNAL_ERROR, lambda s: _status_between(s, 500)),
    ClassificationRule("client_status", QueryErrorCode.VALIDATION_ERROR, lambda s: _status_between(s, 400)),
    ClassificationRule("fallback", QueryErrorCode.INTERNAL_ERROR, lambda s: True),
)


def classify(signal: ErrorSignal) -> ClassificationRule:
    for rule in CLASSIFICATION_RULES:
        if rule.matches(signal):
            return rule
    return CLASSIFICATION_RULES[-1]


def _resolve_message(rule: ClassificationRule, message: str) -> str:
    default = QUERY_ERROR_MESSAGES[rule.code]
    if rule.message_policy == KEEP_MESSAGE:
        return message or default
    if rule.message_policy == APPEND_GUIDANCE:
        if not message:
            return default
        return message if default in message else f"{message}. {default}"
    return default


def build_query_error_response(
    error_message: Optional[str],
    error_code: Optional[str] = None,
    error_status: Any = None,
    details: Optional[List[str]] = None,
    retry_after: Optional[int] = None,
) -> QueryErrorEnvelope:
    message = (error_message or "").strip()
    signal = ErrorSignal(message=message, code=normalize_query_error_code(error_code), status=_coerce_status(error_status))
    rule = classify(signal)
    code = rule.code

    payload: Dict[str, Any] = {
        "error": QUERY_ERROR_TITLES[code],
        "code": code.value,
        "message": _resolve_message(rule, message),
    }
    if details:
        payload["details"] = list(details)
    if code == QueryErrorCode.RATE_LIMIT:
        hint = retry_after if retry_after is not None else (parse_rate_limit_retry_after(message) if message else None)
        if hint:
            payload["retryAfter"] = int(hint)

    return QueryErrorEnvelope(status=QUERY_ERROR_HTTP_STATUS[code], payload=payload)


# ---------------------------
# Exception helpers
# ---------------------------

def extract_error_status(error: Any) -> Optional[int]:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value > 0:
            return int(value)
        if isinstance(value, str) and value.strip().isdigit() and int(value.strip()) > 0:
            return int(value.strip())
    return None


def extract_error_code(error: Any) -> Optional[str]:
    value = getattr(error, "code", None)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_error_details(error: Any) -> Optional[List[str]]:
    value = getattr(error, "details", None)
    if isinstance(value, (list, tuple)):
        details = [str(item) for item in value if str(item).strip()]
        return details or None
    return None


def extract_error_retry_after(error: Any) -> Optional[int]:
    value = getattr(error, "retry_after", None)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return None


def build_internal_query_error_response(error: BaseException) -> QueryErrorEnvelope:
    """Classify an arbitrary exception raised while serving a query."""
    message = getattr(error, "message", None)
    if not isinstance(message, str) or not message:
        message = str(error)
    return build_query_error_response(
        message,
        error_code=extract_error_code(error),
        error_status=extract_error_status(error),
        details=extract_error_details(error),
        retry_after=extract_error_retry_after(error),
    )


def build_query_validation_error_response(details: Optional[List[str]] = None) -> QueryErrorEnvelope:
    return build_query_error_response(
        QUERY_ERROR_MESSAGES[QueryErrorCode.VALIDATION_ERROR],
        error_code=QueryErrorCode.VALIDATION_ERROR.value,
        error_status=400,
        details=details,
    )
