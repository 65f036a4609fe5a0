# security.py
"""
Input hygiene for everything that ends up inside an LLM prompt, plus the
HTTP-level guards (rate limit, request size, security headers).
"""
from __future__ import annotations

import base64
import binascii
import html
import logging
import re
import time
from collections import defaultdict, deque
from functools import wraps
from typing import Deque, Dict, List, Tuple

from fastapi import HTTPException, Request

log = logging.getLogger("security")

MAX_PREFERENCE_TERMS = 20
MAX_TERM_LENGTH = 50
MAX_DESTINATION_LENGTH = 100

PROMPT_INJECTION_PATTERNS = [
    # Direct instruction attempts
    r'\b(ignore|forget|disregard)\s+(previous|above|all|these|your)\s+(instructions?|prompts?|rules?)\b',
    r'\bignore\s+.*\binstructions?\b',
    r'\b(act|behave|pretend|roleplay)\s+as\s+(a|an)?\s*\w+',
    r'\bnow\s+(respond|answer|say|tell|write|generate)\b',

    # Role markers
    r'\b(system|assistant|user)\s*:',
    r'<\s*/?(system|assistant|user)\s*>',

    # Jailbreak attempts
    r'\b(jailbreak|bypass|override|exploit)\b',
    r'\bfor\s+educational\s+purposes?\b',

    # Code injection attempts
    r'```\s*(python|javascript|bash|sh|cmd|powershell|sql)',
    r'\beval\s*\(',
    r'\bexec\s*\(',
    r'\b__import__\s*\(',
    r'\bos\.(system|popen|exec)',

    # Social engineering
    r'\bi\s+am\s+(your\s+)?(creator|developer|admin|owner)\b',

    # Escaped payloads
    r'\\u[0-9a-fA-F]{4}',
    r'&#\d+;',
    r'%[0-9a-fA-F]{2}',
]

COMPILED_PATTERNS = [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in PROMPT_INJECTION_PATTERNS]
_B64_RE = re.compile(r'[A-Za-z0-9+/]{20,}={0,2}')
_CONTROL_RE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')

# (endpoint, client ip) -> request timestamps
rate_limit_storage: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)


def sanitize_input(text: str, max_length: int = 500) -> str:
    """Escape markup, drop control characters and collapse whitespace; 400 when too long."""
    if not isinstance(text, str):
        raise HTTPException(status_code=400, detail="Input must be a string")
    if len(text) > max_length:
        log.warning("Input length exceeded", extra={"length": len(text), "max_length": max_length})
        raise HTTPException(status_code=400, detail=f"Input too long. Maximum {max_length} characters allowed.")

    sanitized = html.escape(text.strip(), quote=False)
    sanitized = _CONTROL_RE.sub('', sanitized)
    return re.sub(r'\s+', ' ', sanitized).strip()


def detect_prompt_injection(text: str) -> Tuple[bool, List[str]]:
    matched = [PROMPT_INJECTION_PATTERNS[i] for i, p in enumerate(COMPILED_PATTERNS) if p.search(text)]

    special_char_ratio = len(re.findall(r'[^\w\s]', text)) / max(len(text), 1)
    if special_char_ratio > 0.3:
        matched.append("excessive_special_characters")

    text_lower = text.lower()
    keywords = ('system', 'ignore', 'override', 'jailbreak', 'bypass', 'prompt', 'instruction')
    if sum(text_lower.count(k) for k in keywords) > 3:
        matched.append("excessive_suspicious_keywords")
    return bool(matched), matched


def detect_encoded_injection(text: str) -> bool:
    """Base64-looking runs that decode to an injection attempt."""
    for match in _B64_RE.findall(text):
        try:
            decoded = base64.b64decode(match + '==').decode('utf-8', errors='ignore')
        except (binascii.Error, ValueError):
            continue
        if detect_prompt_injection(decoded)[0]:
            return True
    return False


def validate_destination(destination: str) -> str:
    if not destination or not str(destination).strip():
        raise HTTPException(status_code=400, detail="Destination cannot be empty")

    clean = sanitize_input(destination, max_length=MAX_DESTINATION_LENGTH)
    suspicious, patterns = detect_prompt_injection(clean)
    if suspicious or detect_encoded_injection(clean):
        log.warning("Suspicious destination detected", extra={"destination": destination, "patterns": patterns})
        raise HTTPException(status_code=400, detail="Invalid destination. Please provide a valid city or location name.")
    if not re.search(r'[^\W\d_]', clean):
        raise HTTPException(status_code=400, detail="Destination must contain letters")
    if len(clean.split()) > 10:
        raise HTTPException(status_code=400, detail="Destination name too complex")
    return clean


def validate_preference_terms(terms: List[str]) -> List[str]:
    """
    Clean interests, accessibility needs and dietary restrictions.

    Suspicious or non-string terms are skipped rather than failing the whole
    request; more than MAX_PREFERENCE_TERMS is a 400.
    """
    if not terms:
        return []
    if isinstance(terms, str):
        terms = [terms]
    if len(terms) > MAX_PREFERENCE_TERMS:
        raise HTTPException(status_code=400, detail=f"Too many preference terms. Maximum {MAX_PREFERENCE_TERMS} allowed.")

    out: List[str] = []
    for term in terms:
        if not isinstance(term, str):
            continue
        clean = sanitize_input(term, max_length=MAX_TERM_LENGTH)
        suspicious, patterns = detect_prompt_injection(clean)
        if suspicious:
            log.warning("Suspicious preference term skipped", extra={"term": term, "patterns": patterns})
            continue
        if clean and clean not in out:
            out.append(clean)
    return out


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    if request.headers.get("x-real-ip"):
        return request.headers["x-real-ip"]
    return request.client.host if request.client else "unknown"


def rate_limit(max_requests: int = 10, window_seconds: int = 60):
    """Sliding-window limit per endpoint and client IP; the endpoint must take `request`."""
    def decorator(func):
        @wraps(func)
        async def wrapper(request: Request, *args, **kwargs):
            client_ip = _client_ip(request)
            now = time.time()
            stamps = rate_limit_storage[(func.__name__, client_ip)]
            while stamps and stamps[0] < now - window_seconds:
                stamps.popleft()

            if len(stamps) >= max_requests:
                log.warning("Rate limit exceeded", extra={
                    "client_ip": client_ip,
                    "endpoint": func.__name__,
                    "requests_count": len(stamps),
                    "window_seconds": window_seconds,
                })
                raise HTTPException(
                    status_code=429,
                    detail=f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds.",
                )
            stamps.append(now)
            return await func(request, *args, **kwargs)
        return wrapper
    return decorator


def security_headers_middleware():
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
        return response
    return add_security_headers


class SecurityValidator:
    @staticmethod
    def validate_request_size(request_size: int, max_size: int = 1024 * 10):
        if request_size > max_size:
            log.warning("Request size too large", extra={"size": request_size, "max_size": max_size})
            raise HTTPException(status_code=413, detail=f"Request too large. Maximum {max_size} bytes allowed.")
