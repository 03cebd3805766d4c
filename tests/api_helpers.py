"""Fake GitHub API responses shared by the cleaner tests."""

from unittest import mock

import requests


def make_response(status=200, payload=None, links=None):
    """Build a mocked `requests.Response` as returned by `Session.request`."""
    resp = mock.Mock()
    resp.status_code = status
    resp.reason = "OK" if status < 400 else "Error"
    resp.json.return_value = payload if payload is not None else {}
    resp.links = links or {}
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(str(status), response=resp)
    return resp


def api_artifact(artifact_id, name, size, run_id, created_at):
    return {
        "id": artifact_id,
        "name": name,
        "size_in_bytes": size,
        "workflow_run": {"id": run_id},
        "created_at": created_at,
    }
