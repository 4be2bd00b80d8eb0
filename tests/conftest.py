import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)


@pytest.fixture
def temp_state_paths(monkeypatch, tmp_path):
    """Redirect the session and view-list files into tmp_path."""
    session_path = tmp_path / "linear_dash.session.json"
    views_path = tmp_path / "linear_dash.views.json"
    monkeypatch.setattr("linear_dash.SESSION_PATH", str(session_path))
    monkeypatch.setattr("linear_dash.VIEW_LIST_CACHE_PATH", str(views_path))
    return session_path, views_path


@pytest.fixture
def cfg():
    import linear_dash as ld
    return ld.Config(api_key="lin_api_test", view_panel_page_size=3, timezone_wait_timeout=5.0)
