"""
Inbound webhook receivers.

Both receivers are producers for the activity feed: they validate and parse
the request, then hand a normalized entry to a `record` callable. They never
raise past handle(); every failure maps to an HTTP status.

  GitHubWebhook      - pull request events, hex HMAC-SHA256 in X-Hub-Signature-256
  DeploymentWebhook  - deployment events, base64 HMAC-SHA256 in X-Deployment-Signature
"""
import base64
import hashlib
import hmac
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import MalformedPayloadError, SignatureValidationError

logger = logging.getLogger(__name__)

GITHUB_SIGNATURE_HEADER = "X-Hub-Signature-256"
DEPLOY_SIGNATURE_HEADER = "X-Deployment-Signature"

TRACKED_PR_ACTIONS = ("opened", "synchronize", "ready_for_review")

DEPLOYMENT_STATUS_LABELS = {
    "BUILDING": "Building",
    "READY": "Deployed",
    "ERROR": "Failed",
    "CANCELED": "Canceled",
}
FAILED_STATUS = "ERROR"

Response = Tuple[Dict[str, Any], int]
RecordFn = Callable[..., Any]


def _as_bytes(payload) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def parse_json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(f"Invalid JSON: {e}") from e


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# GitHub pull requests
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def generate_github_signature(payload, secret: str) -> str:
    """Signature as GitHub sends it: 'sha256=<hex digest>'."""
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def validate_github_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """
    Raise SignatureValidationError unless `signature` matches.

    With no secret configured, validation is skipped (development mode).
    """
    if not secret:
        logger.warning("GitHub webhook secret not configured - skipping signature validation")
        return
    if not signature:
        raise SignatureValidationError("Missing signature")
    expected = generate_github_signature(payload, secret)
    if not hmac.compare_digest(signature.strip(), expected):
        raise SignatureValidationError("Invalid signature")


@dataclass
class PRInfo:
    """The parts of a pull request event the feed cares about."""
    number: Optional[int]
    title: str
    url: str
    author: str
    action: str
    draft: bool
    state: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["PRInfo"]:
        pr = payload.get("pull_request")
        if not isinstance(pr, dict):
            return None
        user = pr.get("user") if isinstance(pr.get("user"), dict) else {}
        return cls(
            number=pr.get("number"),
            title=pr.get("title") or f"PR #{pr.get('number')}",
            url=pr.get("html_url") or "",
            author=user.get("login") or "unknown",
            action=payload.get("action", ""),
            draft=bool(pr.get("draft", False)),
            state=pr.get("state") or "unknown",
        )


def pr_activity_message(info: PRInfo) -> Tuple[str, str]:
    """Map a PR event to (action label, details)."""
    suffix = f" - {info.url}" if info.url else ""
    if info.action == "opened":
        draft = " (Draft)" if info.draft else ""
        return "PR Opened", f"#{info.number}{draft}{suffix}"
    if info.action == "ready_for_review":
        return "PR Ready for Review", f"#{info.number}{suffix}"
    if info.action == "synchronize":
        return "PR Updated", f"#{info.number}{suffix}"
    return f"PR {info.action}", f"#{info.number}{suffix}"


def create_mock_pr_payload(
    action: str,
    pr_number: int = 1,
    pr_title: str = "Test PR",
    is_draft: bool = False,
    author: str = "testuser",
    repo: str = "example/taskboard",
) -> str:
    """A pull_request event body for exercising the endpoint."""
    return json.dumps({
        "action": action,
        "pull_request": {
            "number": pr_number,
            "title": pr_title,
            "draft": is_draft,
            "state": "open",
            "html_url": f"https://github.com/{repo}/pull/{pr_number}",
            "user": {"login": author},
        },
    })


class GitHubWebhook:
    """Receives pull request events and records the tracked ones."""

    source = "github-webhook"

    def __init__(self, secret: str, record: RecordFn):
        self.secret = secret
        self.record = record

    def descriptor(self) -> Dict[str, Any]:
        return {
            "status": "webhook endpoint active",
            "endpoint": "/api/webhooks/github",
            "accepts": ["pull_request"],
            "actions": list(TRACKED_PR_ACTIONS),
        }

    def handle(self, raw_body: bytes, signature: Optional[str]) -> Response:
        try:
            try:
                validate_github_signature(raw_body, signature, self.secret)
            except SignatureValidationError as e:
                logger.warning(f"[GitHub Webhook] Rejected: {e}")
                return {"error": "Invalid signature"}, 401

            try:
                payload = parse_json(raw_body)
            except MalformedPayloadError as e:
                logger.warning(f"[GitHub Webhook] {e}")
                return {"error": "Invalid JSON"}, 400

            if not isinstance(payload, dict) or payload.get("action") is None or not payload.get("pull_request"):
                logger.info("[GitHub Webhook] Not a PR event, ignoring")
                return {"success": True, "message": "Not a PR event"}, 200

            if payload["action"] not in TRACKED_PR_ACTIONS:
                logger.info(f"[GitHub Webhook] PR action '{payload['action']}' not tracked")
                return {"success": True, "message": "Action not tracked"}, 200

            info = PRInfo.from_payload(payload)
            if info is None:
                return {"error": "Invalid PR data"}, 400

            action, details = pr_activity_message(info)
            self.record(action, info.title, details, source=self.source)
            logger.info(f"[GitHub Webhook] Activity logged: {action} - {info.title}")
            return {"success": True, "message": "Activity logged", "pr": asdict(info)}, 200
        except Exception as e:
            logger.error(f"[GitHub Webhook] Error: {e}", exc_info=True)
            return {"error": "Internal server error"}, 500


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Deployments
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def generate_deployment_signature(payload, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_deployment_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """Unlike the GitHub receiver, an unconfigured secret is a rejection."""
    if not secret:
        raise SignatureValidationError("Deployment webhook secret not configured")
    if not signature:
        raise SignatureValidationError("Missing signature")
    expected = generate_deployment_signature(payload, secret)
    if not hmac.compare_digest(signature.strip(), expected):
        raise SignatureValidationError("Invalid signature")


@dataclass
class DeploymentInfo:
    id: str
    status: str
    project: str
    url: Optional[str] = None
    creator: Optional[str] = None
    event_type: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "DeploymentInfo":
        deployment = payload.get("deployment") if isinstance(payload, dict) else None
        if not isinstance(deployment, dict) or not deployment.get("status"):
            raise MalformedPayloadError("Invalid payload")
        creator = deployment.get("creator") if isinstance(deployment.get("creator"), dict) else {}
        return cls(
            id=str(deployment.get("id") or ""),
            status=str(deployment["status"]),
            project=deployment.get("projectId") or "Dashboard",
            url=deployment.get("url"),
            creator=creator.get("username"),
            event_type=payload.get("type"),
        )

    @property
    def label(self) -> str:
        return DEPLOYMENT_STATUS_LABELS.get(self.status, self.status)

    @property
    def failed(self) -> bool:
        return self.status == FAILED_STATUS


def deployment_activity(info: DeploymentInfo) -> Tuple[str, str, str]:
    """Map a deployment to (action, subject title, details)."""
    details = f"{info.project} -> {info.status}"
    if info.url:
        details += f" | {info.url}"
    if info.creator:
        details += f" | by {info.creator}"
    return f"Deployment {info.label}", f"Deployment: {info.project}", details


def deployment_alert_text(info: DeploymentInfo) -> str:
    lines = [
        "⚠️ *Deployment failure*",
        f"Project: {info.project}",
        f"Deployment: `{info.id or '?'}`",
    ]
    if info.url:
        lines.append(f"URL: {info.url}")
    if info.creator:
        lines.append(f"By: {info.creator}")
    return "\n".join(lines)


class DeploymentWebhook:
    """Receives deployment status events; failures also raise an alert."""

    source = "deployment-webhook"

    def __init__(self, secret: str, record: RecordFn, alert: Callable[[str], Any]):
        self.secret = secret
        self.record = record
        self.alert = alert

    def descriptor(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "endpoint": "/api/webhooks/deployments",
            "statuses": list(DEPLOYMENT_STATUS_LABELS),
        }

    def handle(self, raw_body: bytes, signature: Optional[str]) -> Response:
        try:
            if not self.secret:
                logger.warning("[Deploy Webhook] Rejected: secret not configured")
                return {"error": "Webhook secret not configured"}, 503
            try:
                validate_deployment_signature(raw_body, signature, self.secret)
            except SignatureValidationError as e:
                logger.warning(f"[Deploy Webhook] Rejected: {e}")
                return {"error": "Invalid signature"}, 401

            try:
                info = DeploymentInfo.from_payload(parse_json(raw_body))
            except MalformedPayloadError as e:
                logger.warning(f"[Deploy Webhook] {e}")
                return {"error": str(e)}, 400

            action, title, details = deployment_activity(info)
            self.record(action, title, details, source=self.source)

            if info.failed:
                logger.error(f"DEPLOYMENT FAILURE: project={info.project} deployment={info.id} url={info.url}")
                try:
                    self.alert(deployment_alert_text(info))
                except Exception as e:
                    logger.error(f"[Deploy Webhook] Failed to dispatch alert: {e}")
                return {"message": "Deployment failed", "alert": True}, 200

            return {"message": "Deployment logged", "status": info.status}, 200
        except Exception as e:
            logger.error(f"[Deploy Webhook] Error: {e}", exc_info=True)
            return {"error": "Webhook processing failed"}, 500
