"""
Tests for the GitHub PR and deployment webhook receivers.
"""

import json

import pytest

from taskboard.errors import MalformedPayloadError, SignatureValidationError
from taskboard.webhooks import (
    DeploymentInfo,
    DeploymentWebhook,
    GitHubWebhook,
    create_mock_pr_payload,
    deployment_activity,
    generate_deployment_signature,
    generate_github_signature,
    validate_deployment_signature,
    validate_github_signature,
)

SECRET = "test-secret"


class Recorder:
    """Stands in for the activity recorder."""

    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def __call__(self, action, title, details=None, source=None):
        if self.fail:
            raise RuntimeError("recorder down")
        self.calls.append((action, title, details, source))


def signed(body, secret=SECRET):
    return body.encode(), generate_github_signature(body, secret)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Signatures
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestGitHubSignature:

    def test_format(self):
        sig = generate_github_signature(b"{}", SECRET)
        assert sig.startswith("sha256=")
        assert len(sig) == len("sha256=") + 64

    def test_valid_signature_passes(self):
        body = b'{"action": "opened"}'
        validate_github_signature(body, generate_github_signature(body, SECRET), SECRET)

    def test_tampered_body_fails(self):
        sig = generate_github_signature(b'{"a": 1}', SECRET)
        with pytest.raises(SignatureValidationError):
            validate_github_signature(b'{"a": 2}', sig, SECRET)

    def test_missing_signature_fails(self):
        with pytest.raises(SignatureValidationError):
            validate_github_signature(b"{}", None, SECRET)

    def test_no_secret_skips_validation(self):
        validate_github_signature(b"{}", None, "")


class TestDeploymentSignature:

    def test_base64_round_trip(self):
        body = b'{"deployment": {}}'
        validate_deployment_signature(body, generate_deployment_signature(body, SECRET), SECRET)

    def test_github_style_signature_is_rejected(self):
        body = b"{}"
        with pytest.raises(SignatureValidationError):
            validate_deployment_signature(body, generate_github_signature(body, SECRET), SECRET)

    def test_unconfigured_secret_rejects(self):
        with pytest.raises(SignatureValidationError):
            validate_deployment_signature(b"{}", "anything", "")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# GitHub receiver
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestGitHubWebhook:

    def test_opened_draft_is_logged(self):
        record = Recorder()
        hook = GitHubWebhook(SECRET, record)
        body, sig = signed(create_mock_pr_payload("opened", pr_number=42, pr_title="Add board", is_draft=True))

        response, status = hook.handle(body, sig)

        assert status == 200
        assert response["message"] == "Activity logged"
        assert response["pr"]["number"] == 42
        action, title, details, source = record.calls[0]
        assert action == "PR Opened"
        assert title == "Add board"
        assert "(Draft)" in details
        assert details.startswith("#42")
        assert source == "github-webhook"

    @pytest.mark.parametrize("action,label", [
        ("synchronize", "PR Updated"),
        ("ready_for_review", "PR Ready for Review"),
    ])
    def test_tracked_actions(self, action, label):
        record = Recorder()
        body, sig = signed(create_mock_pr_payload(action))
        _, status = GitHubWebhook(SECRET, record).handle(body, sig)
        assert status == 200
        assert record.calls[0][0] == label
        assert "(Draft)" not in record.calls[0][2]

    def test_untracked_action_is_acknowledged(self):
        record = Recorder()
        body, sig = signed(create_mock_pr_payload("closed"))
        response, status = GitHubWebhook(SECRET, record).handle(body, sig)
        assert status == 200
        assert response["message"] == "Action not tracked"
        assert record.calls == []

    def test_non_pr_event(self):
        record = Recorder()
        body, sig = signed(json.dumps({"zen": "Keep it logically awesome."}))
        response, status = GitHubWebhook(SECRET, record).handle(body, sig)
        assert status == 200
        assert response["message"] == "Not a PR event"
        assert record.calls == []

    def test_null_pull_request_is_not_a_pr_event(self):
        record = Recorder()
        body, sig = signed(json.dumps({"action": "opened", "pull_request": None}))
        response, status = GitHubWebhook(SECRET, record).handle(body, sig)
        assert status == 200
        assert response["message"] == "Not a PR event"
        assert record.calls == []

    @pytest.mark.parametrize("signature", [None, "", "sha256=deadbeef"])
    def test_bad_signature_is_rejected(self, signature):
        record = Recorder()
        body = create_mock_pr_payload("opened").encode()
        response, status = GitHubWebhook(SECRET, record).handle(body, signature)
        assert status == 401
        assert response["error"] == "Invalid signature"
        assert record.calls == []

    def test_invalid_json(self):
        body, sig = signed("{not json")
        response, status = GitHubWebhook(SECRET, Recorder()).handle(body, sig)
        assert status == 400
        assert response["error"] == "Invalid JSON"

    def test_pull_request_not_an_object(self):
        body, sig = signed(json.dumps({"action": "opened", "pull_request": "nope"}))
        response, status = GitHubWebhook(SECRET, Recorder()).handle(body, sig)
        assert status == 400
        assert response["error"] == "Invalid PR data"

    def test_recorder_failure_is_500(self):
        body, sig = signed(create_mock_pr_payload("opened"))
        _, status = GitHubWebhook(SECRET, Recorder(fail=True)).handle(body, sig)
        assert status == 500

    def test_unsigned_request_accepted_without_secret(self):
        record = Recorder()
        body = create_mock_pr_payload("opened").encode()
        _, status = GitHubWebhook("", record).handle(body, None)
        assert status == 200
        assert len(record.calls) == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Deployment receiver
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def deployment_body(status="READY", **extra):
    deployment = {
        "id": "dpl_123",
        "status": status,
        "projectId": "dashboard-web",
        "url": "https://dashboard-web.example.app",
        "creator": {"username": "alice"},
    }
    deployment.update(extra)
    return json.dumps({"type": "deployment.status", "deployment": deployment}).encode()


class TestDeploymentWebhook:

    def make(self, secret=SECRET, record=None):
        alerts = []
        hook = DeploymentWebhook(secret, record or Recorder(), alerts.append)
        return hook, alerts

    def test_success_is_logged(self):
        record = Recorder()
        hook, alerts = self.make(record=record)
        body = deployment_body("READY")

        response, status = hook.handle(body, generate_deployment_signature(body, SECRET))

        assert status == 200
        assert response == {"message": "Deployment logged", "status": "READY"}
        assert record.calls == [(
            "Deployment Deployed",
            "Deployment: dashboard-web",
            "dashboard-web -> READY | https://dashboard-web.example.app | by alice",
            "deployment-webhook",
        )]
        assert alerts == []

    def test_failure_is_logged_and_alerted(self):
        record = Recorder()
        hook, alerts = self.make(record=record)
        body = deployment_body("ERROR")

        response, status = hook.handle(body, generate_deployment_signature(body, SECRET))

        assert status == 200
        assert response == {"message": "Deployment failed", "alert": True}
        assert record.calls[0][0] == "Deployment Failed"
        assert len(alerts) == 1
        assert "dashboard-web" in alerts[0]
        assert "dpl_123" in alerts[0]

    def test_unconfigured_secret_is_503(self):
        hook, _ = self.make(secret="")
        body = deployment_body()
        _, status = hook.handle(body, generate_deployment_signature(body, SECRET))
        assert status == 503

    def test_bad_signature_is_401(self):
        record = Recorder()
        hook, alerts = self.make(record=record)
        body = deployment_body("ERROR")
        _, status = hook.handle(body, generate_deployment_signature(body, "wrong"))
        assert status == 401
        assert record.calls == []
        assert alerts == []

    def test_missing_status_is_400(self):
        hook, _ = self.make()
        body = json.dumps({"deployment": {"id": "x"}}).encode()
        response, status = hook.handle(body, generate_deployment_signature(body, SECRET))
        assert status == 400
        assert response["error"] == "Invalid payload"

    def test_alert_failure_does_not_fail_request(self):
        def broken_alert(text):
            raise RuntimeError("telegram down")

        hook = DeploymentWebhook(SECRET, Recorder(), broken_alert)
        body = deployment_body("ERROR")
        _, status = hook.handle(body, generate_deployment_signature(body, SECRET))
        assert status == 200


class TestDeploymentInfo:

    def test_defaults_and_unknown_status(self):
        info = DeploymentInfo.from_payload({"deployment": {"status": "QUEUED"}})
        assert info.project == "Dashboard"
        assert info.label == "QUEUED"
        assert not info.failed
        action, title, details = deployment_activity(info)
        assert action == "Deployment QUEUED"
        assert title == "Deployment: Dashboard"
        assert details == "Dashboard -> QUEUED"

    def test_requires_deployment_object(self):
        with pytest.raises(MalformedPayloadError):
            DeploymentInfo.from_payload({"type": "deployment.status"})
