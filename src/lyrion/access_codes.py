"""Access-code (discount code) validation and redemption.

Codes live in one shared JSON document::

    {"codes": {"STELLA15": {"owner": "Stella", "discount_percent": 15,
                            "expires_at": "2026-12-31T23:59:59Z",
                            "uses_remaining": 10, "status": "active",
                            "conversions": []}}}

Validation reads the public copy and fails open: any failure to fetch or
parse the document yields ``valid=False`` and checkout carries on at full
price. Redemption is a compare-and-swap on the document's content SHA, so
two concurrent redemptions cannot both consume the same last use.
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol
from urllib.parse import quote

from lyrion.config import CODE_UPDATE_ATTEMPTS, Settings
from lyrion.errors import ConflictError, InvalidCodeError, ProviderError, ReferenceDataError
from lyrion.http import fetch_json, request_json
from lyrion.schema import AccessCode, AccessCodeDocument, CodeValidation, Conversion

logger = logging.getLogger("lyrion.access_codes")

GITHUB_API_BASE = "https://api.github.com"


def normalize_code(code: str | None) -> str:
    if not isinstance(code, str):
        return ""
    return code.strip().upper()


class CodeStore(Protocol):
    def read_public(self) -> Any: ...

    def read(self) -> tuple[Any, str]: ...

    def write(self, document: Any, version: str, message: str) -> str: ...


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class MemoryCodeStore:
    """In-process store with the same version check as the GitHub store."""

    def __init__(self, document: Any):
        self._document = json.loads(json.dumps(document))
        self._version = 1

    @property
    def document(self) -> Any:
        return json.loads(json.dumps(self._document))

    def read_public(self) -> Any:
        return self.document

    def read(self) -> tuple[Any, str]:
        return self.document, str(self._version)

    def write(self, document: Any, version: str, message: str) -> str:
        if version != str(self._version):
            raise ConflictError(f"stale version {version}, current {self._version}")
        self._document = json.loads(json.dumps(document))
        self._version += 1
        logger.debug("Memory code store updated: %s", message)
        return str(self._version)


class GitHubCodeStore:
    """Access-code document kept in a GitHub repository.

    Reads for validation hit the public (static hosting) URL; redemption
    reads and writes through the contents API so the blob SHA can be used
    as the optimistic-concurrency token.
    """

    def __init__(self, *, public_url: str, repo: str, path: str, branch: str, token: str):
        self.public_url = public_url
        self.repo = repo
        self.path = path
        self.branch = branch
        self.token = token

    @classmethod
    def from_settings(cls, settings: Settings) -> GitHubCodeStore:
        return cls(
            public_url=settings.access_codes_url,
            repo=settings.access_codes_repo,
            path=settings.access_codes_path,
            branch=settings.access_codes_branch,
            token=settings.github_token,
        )

    @property
    def _contents_url(self) -> str:
        return f"{GITHUB_API_BASE}/repos/{self.repo}/contents/{quote(self.path)}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def read_public(self) -> Any:
        return fetch_json(self.public_url, provider="access-codes")

    def read(self) -> tuple[Any, str]:
        if not self.repo or not self.token:
            raise ReferenceDataError("access-code repository is not configured")
        meta = request_json(
            "GET",
            f"{self._contents_url}?ref={quote(self.branch)}",
            provider="github",
            headers=self._headers(),
        )
        try:
            raw = base64.b64decode(meta["content"])
            return json.loads(raw), meta["sha"]
        except (KeyError, TypeError, ValueError) as e:
            raise ReferenceDataError(f"unreadable access-code document: {e}") from e

    def write(self, document: Any, version: str, message: str) -> str:
        body = json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")
        payload = {
            "message": message,
            "content": base64.b64encode(body).decode("ascii"),
            "sha": version,
            "branch": self.branch,
        }
        try:
            result = request_json(
                "PUT", self._contents_url, provider="github", payload=payload, headers=self._headers()
            )
        except ProviderError as e:
            # 409: sha does not match branch head; 422: sha missing/stale
            if e.http_status in (409, 422):
                raise ConflictError(e.message) from e
            raise
        return (result or {}).get("content", {}).get("sha", "")


# ---------------------------------------------------------------------------
# Validation and redemption
# ---------------------------------------------------------------------------


def _parse_document(raw: Any) -> AccessCodeDocument:
    if not isinstance(raw, dict):
        raise ReferenceDataError("access-code document must be a JSON object")
    doc = AccessCodeDocument.model_validate(raw)
    for key, entry in doc.codes.items():
        if not entry.code:
            entry.code = key
    return doc


def _find(doc: AccessCodeDocument, code: str) -> tuple[str, AccessCode] | None:
    for key, entry in doc.codes.items():
        if normalize_code(key) == code:
            return key, entry
    return None


def check_code(entry: AccessCode | None, now: datetime) -> str | None:
    """Return the rejection reason for an entry, or None when usable."""
    if entry is None:
        return "not_found"
    if entry.status != "active":
        return entry.status if entry.status in ("exhausted", "expired") else "inactive"
    if entry.uses_remaining <= 0:
        return "exhausted"
    if entry.expires_at is not None and now > entry.expires_at:
        return "expired"
    return None


class AccessCodeService:
    def __init__(self, store: CodeStore, *, attempts: int = CODE_UPDATE_ATTEMPTS):
        self.store = store
        self.attempts = attempts

    def validate(self, code: str | None, now: datetime | None = None) -> CodeValidation:
        """Check a code without consuming it. Never raises."""
        normalized = normalize_code(code)
        if not normalized:
            return CodeValidation(valid=False, reason="missing_code")
        now = now or datetime.now(timezone.utc)

        try:
            doc = _parse_document(self.store.read_public())
        except Exception:
            logger.warning("Access-code lookup unavailable for %s", normalized, exc_info=True)
            return CodeValidation(valid=False, reason="lookup_unavailable")

        found = _find(doc, normalized)
        entry = found[1] if found else None
        reason = check_code(entry, now)
        if reason:
            logger.info("Access code %s rejected: %s", normalized, reason)
            return CodeValidation(valid=False, reason=reason)

        return CodeValidation(valid=True, owner=entry.owner, discount_percent=entry.discount_percent)

    def apply(
        self,
        code: str,
        session_id: str,
        amount: float,
        now: datetime | None = None,
    ) -> AccessCode:
        """Consume one use of a code and record the conversion.

        The write is conditional on the version read; on a lost race the
        document is re-read and the code re-checked before trying again.
        """
        normalized = normalize_code(code)
        now = now or datetime.now(timezone.utc)

        for attempt in range(1, self.attempts + 1):
            raw, version = self.store.read()
            doc = _parse_document(raw)
            found = _find(doc, normalized)
            if found and any(c.session_id == session_id for c in found[1].conversions):
                # Holds even after this session used up the last redemption
                logger.info("Code %s already redeemed for session %s", normalized, session_id)
                return found[1]

            entry = found[1] if found else None
            reason = check_code(entry, now)
            if reason:
                raise InvalidCodeError(normalized, reason)

            key, entry = found

            entry.uses_remaining -= 1
            entry.conversions.append(
                Conversion(session_id=session_id, amount=round(float(amount), 2), redeemed_at=now)
            )
            if entry.uses_remaining <= 0:
                entry.uses_remaining = 0
                entry.status = "exhausted"
            doc.codes[key] = entry

            message = f"Redeem access code {normalized} for {session_id}"
            try:
                self.store.write(doc.model_dump(mode="json"), version, message)
            except ConflictError:
                logger.warning(
                    "Access-code document changed during redemption of %s (attempt %d/%d)",
                    normalized,
                    attempt,
                    self.attempts,
                )
                continue

            logger.info(
                "Redeemed %s for %s: %d uses left (%s)",
                normalized,
                session_id,
                entry.uses_remaining,
                entry.status,
            )
            return entry

        raise ConflictError(f"could not redeem {normalized} after {self.attempts} attempts")
