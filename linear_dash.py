#!/usr/bin/env python3
# linear_dash: Terminal dashboard for Linear custom views with concurrent refresh
#
# Hotkeys (dashboard)
#   tab / s-tab  select next / previous view panel
#   j/k          move issue selection
#   r            refresh selected panel (initial load again, stale rows stay visible)
#   m            load more issues into the selected panel
#   S/A/P/C      change workflow state / assignee / project / cycle of selected issue
#   v            open view configuration (custom views -> dashboard slots)
#   q            quit
#
# Hotkeys (view configuration)
#   j/k          move selection in the custom view list
#   1..6         put selected custom view into dashboard slot 1..6
#   !@#$%^       clear dashboard slot 1..6
#   m            load more custom views
#   w            save dashboard slots to ~/.linear_dash.views.json
#   escape       back to dashboard (reloads changed slots)
#
# Config highlights (YAML, all optional)
#   view_panel_page_size: 15      # issues per panel fetch
#   custom_view_page_size: 50
#   op_page_size: 50
#   request_timeout: 30
#
# Environment
# - LINEAR_API_KEY (personal API key); also read from .env or the saved session

from __future__ import annotations

import argparse
import asyncio
import copy
import datetime as dt
import json
import os
import sys
import threading
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
import time
import yaml
from prompt_toolkit import Application
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.filters import Condition
from prompt_toolkit.utils import get_cwidth
import logging
from logging.handlers import RotatingFileHandler


logger = logging.getLogger('linear_dash')

LINEAR_GRAPHQL_URL = "https://api.linear.app/graphql"
DASHBOARD_SLOT_COUNT = 6
PLATFORM_NA = "na"
PLATFORM_LINEAR = "linear"
SHIFTED_DIGIT_KEYS = ["!", "@", "#", "$", "%", "^"]


# -----------------------------
# Errors
# -----------------------------
class LinearDashError(Exception):
    """Base class for recoverable dashboard errors."""


class ProtocolError(LinearDashError):
    """The service answered with a document missing required fields."""


class FetchError(LinearDashError):
    """Network or service failure while talking to Linear."""


class FilterValueError(LinearDashError, ValueError):
    """A user-authored filter references a value the service does not know."""


# -----------------------------
# Config models
# -----------------------------
@dataclass
class Config:
    api_key: str = ""
    view_panel_page_size: int = 15
    custom_view_page_size: int = 50
    op_page_size: int = 50
    request_timeout: int = 30
    max_rate_limit_wait: int = 120
    timezone_wait_timeout: float = 30.0


_POSITIVE_INT_KEYS = ("view_panel_page_size", "custom_view_page_size", "op_page_size", "request_timeout")


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config: top level must be a mapping.")
    cfg = Config(api_key=str(raw.get("api_key") or ""))
    for key in _POSITIVE_INT_KEYS:
        if key not in raw:
            continue
        try:
            val = int(raw[key])
        except (TypeError, ValueError):
            raise ValueError(f"Config: '{key}' must be an integer.") from None
        if val <= 0:
            raise ValueError(f"Config: '{key}' must be positive.")
        setattr(cfg, key, val)
    for key in ("max_rate_limit_wait", "timezone_wait_timeout"):
        if key not in raw:
            continue
        try:
            val_f = float(raw[key])
        except (TypeError, ValueError):
            raise ValueError(f"Config: '{key}' must be a number.") from None
        if val_f <= 0:
            raise ValueError(f"Config: '{key}' must be positive.")
        setattr(cfg, key, int(val_f) if key == "max_rate_limit_wait" else val_f)
    return cfg


# -----------------------------
# Persisted session / view list
# -----------------------------

SESSION_PATH = os.path.expanduser("~/.linear_dash.session.json")
VIEW_LIST_CACHE_PATH = os.path.expanduser("~/.linear_dash.views.json")


def _read_json(path: str) -> Optional[object]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        logger.warning("Unable to read %s", path, exc_info=True)
        return None


def _write_json(path: str, data: object, private: bool = False) -> None:
    directory = os.path.dirname(path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
    if private:
        os.chmod(path, 0o600)


def _load_session() -> Dict[str, object]:
    data = _read_json(SESSION_PATH)
    return data if isinstance(data, dict) else {}


def load_access_token() -> Optional[str]:
    token = _load_session().get("access_token")
    return token if isinstance(token, str) and token else None


def save_access_token(token: str) -> None:
    data = _load_session()
    data["access_token"] = token
    _write_json(SESSION_PATH, data, private=True)


def save_viewer_object(viewer: Dict[str, object]) -> None:
    data = _load_session()
    data["viewer"] = viewer
    _write_json(SESSION_PATH, data, private=True)


def read_view_list() -> Optional[List[Optional[Dict[str, object]]]]:
    """Return the cached dashboard slots, always DASHBOARD_SLOT_COUNT long."""
    data = _read_json(VIEW_LIST_CACHE_PATH)
    if not isinstance(data, list):
        return None
    slots: List[Optional[Dict[str, object]]] = []
    for entry in data[:DASHBOARD_SLOT_COUNT]:
        slots.append(entry if isinstance(entry, dict) and entry.get("id") else None)
    while len(slots) < DASHBOARD_SLOT_COUNT:
        slots.append(None)
    return slots


def save_view_list(slots: List[Optional[Dict[str, object]]]) -> None:
    _write_json(VIEW_LIST_CACHE_PATH, list(slots)[:DASHBOARD_SLOT_COUNT])


def load_dotenv_token() -> Optional[str]:
    """Load LINEAR_API_KEY or TOKEN from a .env file (current dir or script dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("LINEAR_API_KEY", "TOKEN") and v:
                        os.environ.setdefault("LINEAR_API_KEY", v)
                        return v
        except OSError:
            logger.warning("Unable to read %s", path, exc_info=True)
            continue
    return None


def configure_logging(log_level: str = 'ERROR', log_path: Optional[str] = None) -> str:
    """Route the module logger to a rotating file; level filtering happens at the handler."""
    if log_path is None:
        log_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'linear_dash.log')
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return log_path


# -----------------------------
# Pagination cursor
# -----------------------------
@dataclass(frozen=True)
class GraphQLCursor:
    """Continuation state for a relay-style connection.

    The default value means "start of sequence": nothing has been fetched yet,
    so it is never exhausted. Every successful page replaces the cursor.
    """
    end_cursor: Optional[str] = None
    has_next_page: bool = True
    platform: str = PLATFORM_NA

    @classmethod
    def from_page_info(cls, page_info: object) -> "GraphQLCursor":
        if not isinstance(page_info, dict):
            raise ProtocolError(f"pageInfo missing or not an object: {page_info!r}")
        has_next = page_info.get("hasNextPage")
        if not isinstance(has_next, bool):
            raise ProtocolError(f"pageInfo.hasNextPage invalid: {page_info!r}")
        if "endCursor" not in page_info:
            raise ProtocolError(f"pageInfo.endCursor missing: {page_info!r}")
        end = page_info.get("endCursor")
        if end is not None and not isinstance(end, str):
            raise ProtocolError(f"pageInfo.endCursor invalid: {page_info!r}")
        if has_next and not end:
            raise ProtocolError(f"pageInfo reports more pages without an endCursor: {page_info!r}")
        return cls(end_cursor=end, has_next_page=has_next, platform=PLATFORM_LINEAR)

    def is_exhausted(self, platform: str = PLATFORM_LINEAR) -> bool:
        return self.platform == platform and not self.has_next_page

    @property
    def after(self) -> Optional[str]:
        return self.end_cursor if self.platform == PLATFORM_LINEAR else None


@dataclass
class PageResult:
    nodes: List[Dict[str, Any]]
    page_info: object = None

    def next_cursor(self) -> GraphQLCursor:
        return GraphQLCursor.from_page_info(self.page_info)


# -----------------------------
# Linear GraphQL
# -----------------------------
GQL_VIEWER = """query {
  viewer{ id name displayName email organization{ name } }
}
"""

GQL_CUSTOM_VIEWS = """query($firstNum:Int!, $afterCursor:String) {
  customViews(first:$firstNum, after:$afterCursor){
    nodes{
      id name description color icon filterData
      organization{ name }
      team{ id key }
    }
    pageInfo{ hasNextPage endCursor }
  }
}
"""

GQL_ISSUES_BY_FILTER = """query($firstNum:Int!, $afterCursor:String, $filterObj:IssueFilter) {
  issues(first:$firstNum, after:$afterCursor, filter:$filterObj){
    nodes{
      id identifier number title description createdAt priority
      state{ id name type color }
      assignee{ id name displayName }
      project{ id name color }
      cycle{ id name number }
      team{ id key }
      labels(first:10){ nodes{ id name color } }
    }
    pageInfo{ hasNextPage endCursor }
  }
}
"""

GQL_ALL_WORKFLOW_STATES = """query($firstNum:Int!, $afterCursor:String) {
  workflowStates(first:$firstNum, after:$afterCursor){
    nodes{ id name type color description position team{ id } }
    pageInfo{ hasNextPage endCursor }
  }
}
"""

GQL_TEAM_TIMEZONES = """query($firstNum:Int!, $afterCursor:String) {
  teams(first:$firstNum, after:$afterCursor){
    nodes{ id key timezone }
    pageInfo{ hasNextPage endCursor }
  }
}
"""

GQL_TEAM_WORKFLOW_STATES = """query($ref:String!, $firstNum:Int!, $afterCursor:String) {
  team(id:$ref){
    states(first:$firstNum, after:$afterCursor){
      nodes{ id name type color description position }
      pageInfo{ hasNextPage endCursor }
    }
  }
}
"""

GQL_TEAM_MEMBERS = """query($ref:String!, $firstNum:Int!, $afterCursor:String) {
  team(id:$ref){
    members(first:$firstNum, after:$afterCursor){
      nodes{ id name displayName email }
      pageInfo{ hasNextPage endCursor }
    }
  }
}
"""

GQL_TEAM_PROJECTS = """query($ref:String!, $firstNum:Int!, $afterCursor:String) {
  team(id:$ref){
    projects(first:$firstNum, after:$afterCursor){
      nodes{ id name color state }
      pageInfo{ hasNextPage endCursor }
    }
  }
}
"""

GQL_TEAM_CYCLES = """query($ref:String!, $firstNum:Int!, $afterCursor:String) {
  team(id:$ref){
    cycles(first:$firstNum, after:$afterCursor){
      nodes{ id name number startsAt endsAt }
      pageInfo{ hasNextPage endCursor }
    }
  }
}
"""

GQL_MUTATION_UPDATE_ISSUE = """mutation($issueId:String!, $input:IssueUpdateInput!) {
  issueUpdate(id:$issueId, input:$input){
    success
    issue{
      id identifier title
      state{ id name type color }
      assignee{ id name displayName }
      project{ id name color }
      cycle{ id name number }
    }
  }
}
"""

REFERENCE_PAGE_LIMIT = 50


def _session(token: str) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = token
    s.headers["Content-Type"] = "application/json"
    return s


def _graphql_raw(session: requests.Session, query: str, variables: Dict[str, object], timeout: float = 60) -> Dict:
    try:
        r = session.post(LINEAR_GRAPHQL_URL, json={"query": query, "variables": variables}, timeout=timeout)
        if r.status_code == 400:
            # Linear reports GraphQL errors (rate limits included) with HTTP 400
            try:
                body = r.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("errors"):
                return body
        r.raise_for_status()
        return r.json()
    except requests.RequestException:
        logger.exception("GraphQL request failed")
        raise


def _retry_sleep(seconds: float, on_wait: Optional[Callable[[str], None]] = None) -> None:
    msg = f"Rate limited; waiting {int(seconds)}s…"
    if on_wait:
        on_wait(msg)
    else:
        logger.info(msg)
    time.sleep(max(0.0, seconds))


def _parse_retry_after_seconds(resp: Optional[requests.Response]) -> Optional[int]:
    if resp is None or resp.headers is None:
        return None
    ra = resp.headers.get('Retry-After')
    if ra:
        try:
            return int(float(ra))
        except ValueError:
            pass
    # Linear sends the reset time as epoch milliseconds
    reset = resp.headers.get('X-RateLimit-Requests-Reset')
    if reset:
        try:
            reset_at = int(reset) / 1000.0
        except ValueError:
            return None
        return max(1, int(reset_at - time.time()))
    return None


def _is_rate_limited(errs: List[object]) -> bool:
    for e in errs:
        if not isinstance(e, dict):
            continue
        code = (e.get("extensions") or {}).get("code") if isinstance(e.get("extensions"), dict) else None
        if code == "RATELIMITED" or e.get("type") == "RATELIMITED":
            return True
    return False


def _graphql_with_backoff(
    session: requests.Session,
    query: str,
    variables: Dict[str, object],
    on_wait: Optional[Callable[[str], None]] = None,
    max_total_wait: int = 120,
    timeout: float = 60,
) -> Dict:
    """Call GraphQL with handling for rate limits and transient failures.

    - Retries RATELIMITED GraphQL errors with exponential backoff.
    - Retries HTTP 429/502/503/504 with Retry-After or exponential backoff.
    - Gives up once the accumulated wait would exceed max_total_wait.
    """
    backoff = 5
    total_wait = 0
    while True:
        try:
            resp = _graphql_raw(session, query, variables, timeout=timeout)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (429, 502, 503, 504):
                wait_s = _parse_retry_after_seconds(e.response)
                if wait_s is None:
                    wait_s = min(60, backoff)
                    backoff = min(60, backoff * 2)
                if total_wait + wait_s > max_total_wait:
                    raise
                _retry_sleep(wait_s, on_wait)
                total_wait += wait_s
                continue
            raise
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError):
            wait_s = min(30, backoff)
            backoff = min(60, backoff * 2)
            if total_wait + wait_s > max_total_wait:
                raise
            _retry_sleep(wait_s, on_wait)
            total_wait += wait_s
            continue

        errs = resp.get("errors") or []
        if errs and _is_rate_limited(errs):
            wait_s = min(60, backoff)
            backoff = min(60, backoff * 2)
            if total_wait + wait_s > max_total_wait:
                return resp
            _retry_sleep(wait_s, on_wait)
            total_wait += wait_s
            continue
        return resp


def _error_text(errs: List[object]) -> str:
    return "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errs)


def _run_query(api_key: str, cfg: Config, query: str, variables: Dict[str, object], what: str) -> Dict[str, Any]:
    """Execute one GraphQL document and return its ``data`` object.

    Transport failures and GraphQL ``errors`` become FetchError; a response
    without a ``data`` object is a ProtocolError.
    """
    if not api_key:
        raise FetchError(f"{what}: LINEAR_API_KEY is not set")
    session = _session(api_key)
    try:
        resp = _graphql_with_backoff(
            session, query, variables,
            max_total_wait=cfg.max_rate_limit_wait,
            timeout=cfg.request_timeout,
        )
    except (requests.RequestException, ValueError) as exc:
        raise FetchError(f"{what} failed: {exc}") from exc
    if not isinstance(resp, dict):
        raise ProtocolError(f"{what}: response is not an object")
    errs = resp.get("errors") or []
    if errs:
        raise FetchError(f"{what} failed: {_error_text(errs)}")
    data = resp.get("data")
    if not isinstance(data, dict):
        raise ProtocolError(f"{what}: response has no data")
    return data


def _page_from(connection: object, what: str) -> PageResult:
    if not isinstance(connection, dict):
        raise ProtocolError(f"{what}: connection missing from response")
    nodes = connection.get("nodes")
    if not isinstance(nodes, list):
        raise ProtocolError(f"{what}: 'nodes' invalid format: {nodes!r}")
    return PageResult(nodes=[n for n in nodes if isinstance(n, dict)], page_info=connection.get("pageInfo"))


def _page_variables(cursor: GraphQLCursor, page_size: int) -> Dict[str, object]:
    return {"firstNum": int(page_size), "afterCursor": cursor.after}


def fetch_viewer(api_key: str, cfg: Config) -> Dict[str, Any]:
    data = _run_query(api_key, cfg, GQL_VIEWER, {}, "Viewer lookup")
    viewer = data.get("viewer")
    if not isinstance(viewer, dict) or not viewer.get("id"):
        raise ProtocolError("Viewer lookup: 'viewer' missing from response")
    return viewer


def fetch_custom_views(cfg: Config, cursor: GraphQLCursor) -> PageResult:
    data = _run_query(cfg.api_key, cfg, GQL_CUSTOM_VIEWS,
                      _page_variables(cursor, cfg.custom_view_page_size), "Custom view fetch")
    return _page_from(data.get("customViews"), "Custom view fetch")


def fetch_issues_by_filter(cfg: Config, filter_data: Optional[Dict[str, Any]], cursor: GraphQLCursor, page_size: int) -> PageResult:
    variables = _page_variables(cursor, page_size)
    variables["filterObj"] = filter_data
    data = _run_query(cfg.api_key, cfg, GQL_ISSUES_BY_FILTER, variables, "Issue fetch")
    return _page_from(data.get("issues"), "Issue fetch")


def fetch_op_reference_page(op: "ModificationOp", cfg: Config, cursor: GraphQLCursor, team_id: str) -> PageResult:
    return op.load_reference_data(cfg, cursor, team_id)


def update_issue_field(op: "ModificationOp", cfg: Config, issue_id: str, value_id: str) -> Dict[str, Any]:
    variables = {"issueId": issue_id, "input": {op.mutation_input_key: value_id}}
    data = _run_query(cfg.api_key, cfg, GQL_MUTATION_UPDATE_ISSUE, variables, f"{op.title}")
    payload = data.get("issueUpdate")
    if not isinstance(payload, dict):
        raise ProtocolError("Issue update: 'issueUpdate' missing from response")
    return {"success": payload.get("success") is True, "issue": payload.get("issue") or {}}


def _fetch_all_pages(cfg: Config, query: str, connection_key: str, what: str) -> List[Dict[str, Any]]:
    cursor = GraphQLCursor()
    out: List[Dict[str, Any]] = []
    pages = 0
    while not cursor.is_exhausted() and pages < REFERENCE_PAGE_LIMIT:
        data = _run_query(cfg.api_key, cfg, query, _page_variables(cursor, 100), what)
        page = _page_from(data.get(connection_key), what)
        out.extend(page.nodes)
        cursor = page.next_cursor()
        pages += 1
    return out


def fetch_all_workflow_states(cfg: Config) -> List[Dict[str, Any]]:
    return _fetch_all_pages(cfg, GQL_ALL_WORKFLOW_STATES, "workflowStates", "Workflow state fetch")


def fetch_team_timezones(cfg: Config) -> Dict[str, str]:
    teams = _fetch_all_pages(cfg, GQL_TEAM_TIMEZONES, "teams", "Team timezone fetch")
    out: Dict[str, str] = {}
    for team in teams:
        team_id = team.get("id")
        tz_name = team.get("timezone")
        if isinstance(team_id, str) and isinstance(tz_name, str) and tz_name:
            out[team_id] = tz_name
    return out


# -----------------------------
# Canonical reference data / filter normalization
# -----------------------------
class WorkflowStateCatalog:
    """Canonical (case-correct) workflow states, loaded once on first use.

    The loader runs under the catalog lock, so concurrent normalizations wait
    for the single in-flight load instead of issuing their own. A failed load
    leaves the catalog empty and the next caller tries again.
    """

    def __init__(self, loader: Callable[[], List[Dict[str, Any]]]):
        self._loader = loader
        self._lock = threading.Lock()
        self._states: Optional[List[Dict[str, Any]]] = None
        self.load_count = 0

    @property
    def loaded(self) -> bool:
        return self._states is not None

    def ensure_loaded(self) -> List[Dict[str, Any]]:
        with self._lock:
            if self._states is None:
                states = self._loader() or []
                self.load_count += 1
                self._states = [s for s in states if isinstance(s, dict) and isinstance(s.get("name"), str)]
                logger.info("Loaded %d canonical workflow states", len(self._states))
            return list(self._states)

    def invalidate(self) -> None:
        with self._lock:
            self._states = None

    def canonical_name(self, value: str) -> Optional[str]:
        wanted = value.lower()
        for state in self.ensure_loaded():
            if state["name"].lower() == wanted:
                return state["name"]
        return None


class FilterNormalizer:
    """Rewrite ``{"and": [{field: {attribute: {"in"|"nin": [...]}}}]}`` to canonical case."""

    LIST_OPERATORS = ("in", "nin")

    def __init__(self, field_name: str = "state", attribute: str = "name"):
        self.field_name = field_name
        self.attribute = attribute

    def locate(self, filter_data: object) -> Optional[int]:
        if not isinstance(filter_data, dict):
            return None
        predicates = filter_data.get("and")
        if not isinstance(predicates, list):
            return None
        for idx, predicate in enumerate(predicates):
            if isinstance(predicate, dict) and self.field_name in predicate:
                return idx
        return None

    def normalize(self, filter_data: Dict[str, Any], catalog: WorkflowStateCatalog) -> Dict[str, Any]:
        idx = self.locate(filter_data)
        if idx is None:
            return filter_data
        label = f"{self.field_name}.{self.attribute}"
        field_obj = filter_data["and"][idx][self.field_name]
        if not isinstance(field_obj, dict):
            raise FilterValueError(f"Filter predicate '{self.field_name}' is not an object: {field_obj!r}")
        attr_obj = field_obj.get(self.attribute)
        if not isinstance(attr_obj, dict):
            return filter_data
        present = [op for op in self.LIST_OPERATORS if isinstance(attr_obj.get(op), list)]
        if not present:
            return filter_data
        if len(present) > 1:
            raise FilterValueError(f"Filter on {label} uses both 'in' and 'nin'")
        op = present[0]
        canonical: List[str] = []
        for value in attr_obj[op]:
            if not isinstance(value, str):
                raise FilterValueError(f"Filter on {label} has non-string value {value!r}")
            name = catalog.canonical_name(value)
            if name is None:
                raise FilterValueError(f"Filter on {label} references unknown value '{value}'")
            canonical.append(name)
        logger.debug("Normalized %s %s %s -> %s", label, op, attr_obj[op], canonical)
        attr_obj[op] = canonical
        return filter_data


STATE_FILTER_NORMALIZER = FilterNormalizer("state", "name")


# -----------------------------
# Paginated view resolver
# -----------------------------
VIEW_FETCH_MAX_REQUESTS = 100


@dataclass
class ViewFetchResult:
    issues: List[Dict[str, Any]]
    cursor: GraphQLCursor
    request_num: int = 0


def fetch_view_issues(
    cursor: GraphQLCursor,
    target_size: int,
    filter_data: Optional[Dict[str, Any]],
    cfg: Config,
    catalog: WorkflowStateCatalog,
    normalizer: FilterNormalizer = STATE_FILTER_NORMALIZER,
) -> ViewFetchResult:
    """Page through one filter until target_size issues are collected or pages run out.

    The caller's filter is never modified; normalization works on a copy.
    Raises FilterValueError, FetchError or ProtocolError; nothing partial is
    returned on failure.
    """
    filter_obj = copy.deepcopy(filter_data) if filter_data is not None else None
    if filter_obj is not None:
        normalizer.normalize(filter_obj, catalog)
    target = max(1, int(target_size))
    found: List[Dict[str, Any]] = []
    request_num = 0
    while not cursor.is_exhausted():
        if request_num >= VIEW_FETCH_MAX_REQUESTS:
            logger.warning("View fetch stopped after %d requests with %d issues", request_num, len(found))
            break
        page = fetch_issues_by_filter(cfg, filter_obj, cursor, max(1, target - len(found)))
        request_num += 1
        found.extend(page.nodes)
        cursor = page.next_cursor()
        logger.debug("View fetch request %d: %d issues so far", request_num, len(found))
        if len(found) >= target:
            break
    return ViewFetchResult(issues=found, cursor=cursor, request_num=request_num)


def _localize_timestamp(iso: str, tz_name: Optional[str]) -> str:
    try:
        stamp = dt.datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError:
        return ""
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=dt.timezone.utc)
    tz: dt.tzinfo = dt.timezone.utc
    if tz_name:
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown team timezone %r; using UTC", tz_name)
    return stamp.astimezone(tz).strftime("%Y-%m-%d %H:%M")


def localize_issue_dates(issues: List[Dict[str, Any]], team_tz_map: Dict[str, str]) -> List[Dict[str, Any]]:
    for issue in issues:
        created = issue.get("createdAt")
        if not isinstance(created, str):
            continue
        team = issue.get("team")
        team_id = team.get("id") if isinstance(team, dict) else None
        issue["createdAtLocal"] = _localize_timestamp(created, team_tz_map.get(team_id) if team_id else None)
    return issues


def load_view_issues(
    cfg: Config,
    view: Dict[str, Any],
    cursor: Optional[GraphQLCursor],
    catalog: WorkflowStateCatalog,
    team_tz_map: Dict[str, str],
) -> ViewFetchResult:
    filter_data = view.get("filterData")
    if filter_data is not None and not isinstance(filter_data, dict):
        raise FilterValueError(f"View '{view.get('name')}' has a malformed filter: {filter_data!r}")
    logger.info("Resolving view %s (%s)", view.get("id"), view.get("name"))
    result = fetch_view_issues(cursor or GraphQLCursor(), cfg.view_panel_page_size, filter_data, cfg, catalog)
    localize_issue_dates(result.issues, team_tz_map)
    logger.info("View %s resolved %d issues in %d requests", view.get("id"), len(result.issues), result.request_num)
    return result


# -----------------------------
# Issue modification operations
# -----------------------------
def _cell(value: object) -> str:
    if value is None:
        return ""
    return str(value)


class ModificationOp:
    """One kind of single-field issue edit (state, assignee, project, cycle).

    Subclasses set the team connection to page through for candidate values
    and the IssueUpdateInput key the chosen value's id is sent under.
    """
    name = ""
    record_field = ""
    title = ""
    columns: Tuple[str, ...] = ()
    mutation_input_key = ""
    query = ""
    connection = ""

    def load_reference_data(self, cfg: Config, cursor: GraphQLCursor, team_id: str) -> PageResult:
        variables: Dict[str, object] = {"ref": team_id}
        variables.update(_page_variables(cursor, cfg.op_page_size))
        what = f"{self.title} data"
        data = _run_query(cfg.api_key, cfg, self.query, variables, what)
        team = data.get("team")
        if not isinstance(team, dict):
            raise ProtocolError(f"{what}: team '{team_id}' not found")
        return _page_from(team.get(self.connection), what)

    def render_fields(self, value: Dict[str, Any]) -> List[str]:
        return [_cell(value.get("name"))]

    def apply_to_record(self, record: Dict[str, Any], value: Optional[Dict[str, Any]]) -> None:
        record[self.record_field] = copy.deepcopy(value)

    def describe(self, value: Optional[Dict[str, Any]]) -> str:
        if not value:
            return "-"
        return _cell(value.get("name")) or _cell(value.get("id"))


class WorkflowStateOp(ModificationOp):
    name = "workflow_state"
    record_field = "state"
    title = "Select New Workflow State"
    columns = ("Name", "Type", "Description")
    mutation_input_key = "stateId"
    query = GQL_TEAM_WORKFLOW_STATES
    connection = "states"

    def render_fields(self, value):
        return [_cell(value.get("name")), _cell(value.get("type")), _cell(value.get("description"))]


class AssigneeOp(ModificationOp):
    name = "assignee"
    record_field = "assignee"
    title = "Select New Assignee"
    columns = ("Name", "Display Name", "Email")
    mutation_input_key = "assigneeId"
    query = GQL_TEAM_MEMBERS
    connection = "members"

    def render_fields(self, value):
        return [_cell(value.get("name")), _cell(value.get("displayName")), _cell(value.get("email"))]

    def describe(self, value):
        if not value:
            return "-"
        return _cell(value.get("displayName")) or _cell(value.get("name"))


class ProjectOp(ModificationOp):
    name = "project"
    record_field = "project"
    title = "Select New Project"
    columns = ("Name", "State")
    mutation_input_key = "projectId"
    query = GQL_TEAM_PROJECTS
    connection = "projects"

    def render_fields(self, value):
        return [_cell(value.get("name")), _cell(value.get("state"))]


class CycleOp(ModificationOp):
    name = "cycle"
    record_field = "cycle"
    title = "Select New Cycle"
    columns = ("Number", "Name", "Starts", "Ends")
    mutation_input_key = "cycleId"
    query = GQL_TEAM_CYCLES
    connection = "cycles"

    def render_fields(self, value):
        return [
            _cell(value.get("number")),
            _cell(value.get("name")),
            _cell(value.get("startsAt"))[:10],
            _cell(value.get("endsAt"))[:10],
        ]

    def describe(self, value):
        if not value:
            return "-"
        return _cell(value.get("name")) or f"Cycle {_cell(value.get('number'))}"


MODIFICATION_OPS: Dict[str, ModificationOp] = {
    op.name: op for op in (WorkflowStateOp(), AssigneeOp(), ProjectOp(), CycleOp())
}


# -----------------------------
# Dashboard state
# -----------------------------
class _GuardedState:
    """Loading guard shared by every fetchable piece of UI state.

    ``begin_loading`` is the only way in: it refuses while a fetch is already
    in flight, so duplicate requests are dropped instead of queued.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.loading = False
        self.error: Optional[str] = None

    def begin_loading(self) -> bool:
        with self.lock:
            if self.loading:
                return False
            self.loading = True
            self.error = None
            return True

    def end_loading(self) -> None:
        with self.lock:
            self.loading = False

    def fail(self, message: str) -> None:
        with self.lock:
            self.loading = False
            self.error = message


class DashboardViewPanel(_GuardedState):
    """Live state for one custom view shown on the dashboard; identity is the view id."""

    def __init__(self, view: Dict[str, Any]):
        super().__init__()
        self.view = view
        self.issues: List[Dict[str, Any]] = []
        self.cursor = GraphQLCursor()
        self.request_num = 0

    @property
    def view_id(self) -> Optional[str]:
        vid = self.view.get("id")
        return vid if isinstance(vid, str) and vid else None

    @property
    def title(self) -> str:
        return _cell(self.view.get("name")) or "(unnamed view)"

    def apply_result(self, result: ViewFetchResult, append: bool) -> None:
        with self.lock:
            if append:
                self.issues = self.issues + list(result.issues)
            else:
                self.issues = list(result.issues)
            self.cursor = result.cursor
            self.request_num += result.request_num
            self.loading = False
            self.error = None

    def snapshot(self) -> Tuple[List[Dict[str, Any]], GraphQLCursor, int, bool, Optional[str]]:
        with self.lock:
            return list(self.issues), self.cursor, self.request_num, self.loading, self.error

    def patch_issue(self, issue_id: str, op: ModificationOp, value: Optional[Dict[str, Any]]) -> int:
        patched = 0
        with self.lock:
            for issue in self.issues:
                if issue.get("id") == issue_id:
                    op.apply_to_record(issue, value)
                    patched += 1
        return patched


@dataclass
class ReconcileResult:
    panels: List[Optional[DashboardViewPanel]]
    to_fetch: List[int] = field(default_factory=list)


def reconcile_panels(
    view_slots: List[Optional[Dict[str, Any]]],
    panels: List[Optional[DashboardViewPanel]],
) -> ReconcileResult:
    """Rebuild the panel list for the current slots, reusing panels by view id.

    Existing panels keep their issues, cursor and request count wherever they
    move to. New views get a fresh panel and their slot index is reported in
    ``to_fetch``. A view placed in two slots shares one panel.
    """
    previous: Dict[str, DashboardViewPanel] = {}
    for panel in panels:
        if panel is not None and panel.view_id and panel.view_id not in previous:
            previous[panel.view_id] = panel
    out: List[Optional[DashboardViewPanel]] = []
    to_fetch: List[int] = []
    for idx, view in enumerate(view_slots):
        if not isinstance(view, dict):
            out.append(None)
            continue
        view_id = view.get("id")
        panel = previous.get(view_id) if isinstance(view_id, str) and view_id else None
        if panel is None:
            panel = DashboardViewPanel(view)
            if panel.view_id:
                previous[panel.view_id] = panel
            to_fetch.append(idx)
        out.append(panel)
    dropped = [vid for vid, p in previous.items() if p not in out]
    if dropped:
        logger.debug("Reconcile dropped panels for views %s", dropped)
    return ReconcileResult(panels=out, to_fetch=to_fetch)


def propagate_issue_update(
    panels: List[Optional[DashboardViewPanel]],
    issue_id: str,
    op: ModificationOp,
    value: Optional[Dict[str, Any]],
) -> int:
    """Write a confirmed mutation into every loaded copy of the issue."""
    patched = 0
    seen: Set[int] = set()
    for panel in panels:
        if panel is None or id(panel) in seen:
            continue
        seen.add(id(panel))
        patched += panel.patch_issue(issue_id, op, value)
    logger.info("Propagated %s update of %s to %d record(s)", op.name, issue_id, patched)
    return patched


class CustomViewSelect(_GuardedState):
    """Paged list of the organization's custom views for the slot editor."""

    def __init__(self):
        super().__init__()
        self.views: List[Dict[str, Any]] = []
        self.cursor = GraphQLCursor()
        self.selected_idx: Optional[int] = None

    def apply_page(self, nodes: List[Dict[str, Any]], cursor: GraphQLCursor) -> None:
        with self.lock:
            self.views = self.views + list(nodes)
            self.cursor = cursor
            if self.selected_idx is None and self.views:
                self.selected_idx = 0
            self.loading = False
            self.error = None

    def move_selection(self, delta: int) -> None:
        with self.lock:
            if not self.views:
                self.selected_idx = None
                return
            cur = self.selected_idx or 0
            self.selected_idx = max(0, min(len(self.views) - 1, cur + delta))

    def selected_view(self) -> Optional[Dict[str, Any]]:
        with self.lock:
            idx = self.selected_idx
            if idx is None or not (0 <= idx < len(self.views)):
                return None
            return self.views[idx]


class IssueOpInterface(_GuardedState):
    """Bulk-edit pop-up: the chosen op, the issue it targets, its paged candidate values and the selection.

    Every ``open`` starts a new session and bumps ``generation``; a reference
    page fetched for an older session is discarded.
    """

    def __init__(self):
        super().__init__()
        self.current_op: ModificationOp = MODIFICATION_OPS["workflow_state"]
        self.target_issue: Optional[Dict[str, Any]] = None
        self.data: List[Dict[str, Any]] = []
        self.cursor = GraphQLCursor()
        self.selected_idx: Optional[int] = None
        self.active = False
        self.generation = 0

    @property
    def target_issue_id(self) -> Optional[str]:
        issue_id = (self.target_issue or {}).get("id")
        return issue_id if isinstance(issue_id, str) and issue_id else None

    @property
    def target_team_id(self) -> Optional[str]:
        team = (self.target_issue or {}).get("team")
        team_id = team.get("id") if isinstance(team, dict) else None
        return team_id if isinstance(team_id, str) and team_id else None

    def open(self, op_name: str, issue: Optional[Dict[str, Any]]) -> ModificationOp:
        op = MODIFICATION_OPS[op_name]
        with self.lock:
            self.current_op = op
            self.target_issue = copy.deepcopy(issue) if issue is not None else None
            self.data = []
            self.cursor = GraphQLCursor()
            self.selected_idx = None
            self.error = None
            self.active = True
            self.generation += 1
        return op

    def close(self) -> None:
        with self.lock:
            self.active = False

    def apply_page(self, generation: int, nodes: List[Dict[str, Any]], cursor: GraphQLCursor) -> bool:
        with self.lock:
            self.loading = False
            if generation != self.generation:
                return False
            self.data = self.data + list(nodes)
            self.cursor = cursor
            if self.selected_idx is None and self.data:
                self.selected_idx = 0
            self.error = None
            return True

    def fail_session(self, generation: int, message: str) -> bool:
        with self.lock:
            self.loading = False
            if generation != self.generation:
                return False
            self.error = message
            return True

    def move_selection(self, delta: int) -> None:
        with self.lock:
            if not self.data:
                self.selected_idx = None
                return
            cur = self.selected_idx or 0
            self.selected_idx = max(0, min(len(self.data) - 1, cur + delta))

    def selected_value(self) -> Optional[Dict[str, Any]]:
        with self.lock:
            idx = self.selected_idx
            if idx is None or not (0 <= idx < len(self.data)):
                return None
            return self.data[idx]


class TimezoneState:
    """Team id -> IANA timezone map plus the one-shot barrier guarding issue fetches.

    A failed load still opens the barrier (with whatever map is already
    known) and sets ``load_failed``; ``rearm`` closes the barrier again so a
    retry can run.
    """

    def __init__(self):
        self.team_tz_map: Dict[str, str] = {}
        self.load_in_progress = False
        self.load_done = False
        self.load_failed = False
        self._lock = threading.Lock()
        self._ready = asyncio.Event()

    def mark_ready(self, mapping: Optional[Dict[str, str]], failed: bool = False) -> None:
        with self._lock:
            if mapping is not None:
                self.team_tz_map = dict(mapping)
            self.load_in_progress = False
            self.load_done = True
            self.load_failed = failed
            ready = self._ready
        ready.set()

    def rearm(self) -> bool:
        with self._lock:
            if not self.load_failed or self.load_in_progress:
                return False
            self.load_done = False
            self.load_failed = False
            self._ready = asyncio.Event()
            return True

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        if self.load_done:
            return
        await asyncio.wait_for(self._ready.wait(), timeout)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self.team_tz_map)


# -----------------------------
# Dispatch engine
# -----------------------------
TOKEN_UNVALIDATED = "unvalidated"
TOKEN_VALIDATING = "validating"
TOKEN_VALID = "valid"
TOKEN_INVALID = "invalid"


@dataclass
class ViewLoadBundle:
    """Everything one panel fetch needs, captured when the event is dispatched."""
    cfg: Config
    panel: DashboardViewPanel
    cursor: GraphQLCursor
    append: bool


class DashboardDispatcher:
    """Runs dashboard events as asyncio tasks and owns all shared UI state.

    ``dispatch_event`` never blocks: it checks preconditions, takes the
    relevant loading guard, snapshots what the request needs and spawns a
    task. Blocking network calls run in the default executor. Failures are
    caught at the task boundary and land in the owning state's ``error`` plus
    ``status_line``.
    """

    def __init__(
        self,
        cfg: Config,
        catalog: Optional[WorkflowStateCatalog] = None,
        view_list: Optional[List[Optional[Dict[str, Any]]]] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.cfg = cfg
        self.workflow_states = catalog or WorkflowStateCatalog(lambda: fetch_all_workflow_states(replace(self.cfg)))
        slots = list(view_list or [])[:DASHBOARD_SLOT_COUNT]
        self.dashboard_view_list: List[Optional[Dict[str, Any]]] = slots + [None] * (DASHBOARD_SLOT_COUNT - len(slots))
        self.panels: List[Optional[DashboardViewPanel]] = [None] * DASHBOARD_SLOT_COUNT
        self.custom_views = CustomViewSelect()
        self.op_interface = IssueOpInterface()
        self.timezones = TimezoneState()
        self.on_change = on_change
        self.token_state = TOKEN_UNVALIDATED
        self.viewer: Optional[Dict[str, Any]] = None
        self.status_line = ""
        self.selected_panel_idx: Optional[int] = None
        self.selected_issue_idx = 0
        self._tasks: Set[asyncio.Task] = set()
        self._handlers: Dict[str, Callable[..., Optional[asyncio.Task]]] = {
            "load_viewer": self._load_viewer,
            "load_custom_views": self._load_custom_views,
            "load_team_timezones": self._load_team_timezones,
            "load_dashboard_views": self._load_dashboard_views,
            "paginate_dashboard_view": self._paginate_dashboard_view,
            "refresh_dashboard_view": self._refresh_dashboard_view,
            "load_issue_op_data": self._load_issue_op_data,
            "update_issue": self._update_issue,
        }

    # -- plumbing -------------------------------------------------------
    def dispatch_event(self, event_name: str, **kwargs) -> Optional[asyncio.Task]:
        handler = self._handlers.get(event_name)
        if handler is None:
            logger.warning("Ignoring unknown event %r", event_name)
            return None
        logger.debug("dispatch_event %s %s", event_name, kwargs or "")
        return handler(**kwargs)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    def _notify(self) -> None:
        if self.on_change is not None:
            try:
                self.on_change()
            except Exception:
                logger.exception("on_change callback failed")

    def set_status(self, message: str) -> None:
        self.status_line = message
        self._notify()

    def _report_failure(self, what: str, exc: BaseException) -> str:
        if isinstance(exc, LinearDashError):
            logger.warning("%s failed: %s", what, exc)
        else:
            logger.error("%s failed", what, exc_info=exc)
        message = f"{what} failed: {exc}"
        self.set_status(message)
        return message

    # -- selection helpers ---------------------------------------------
    def _panel_at(self, idx: Optional[int]) -> Optional[DashboardViewPanel]:
        if idx is None or not (0 <= idx < len(self.panels)):
            return None
        return self.panels[idx]

    def selected_panel(self) -> Optional[DashboardViewPanel]:
        return self._panel_at(self.selected_panel_idx)

    def selected_issue(self) -> Optional[Dict[str, Any]]:
        panel = self.selected_panel()
        if panel is None:
            return None
        issues = panel.snapshot()[0]
        if 0 <= self.selected_issue_idx < len(issues):
            return issues[self.selected_issue_idx]
        return None

    def _clamp_selection(self) -> None:
        live = [i for i, p in enumerate(self.panels) if p is not None]
        if not live:
            self.selected_panel_idx = None
            self.selected_issue_idx = 0
        elif self.selected_panel_idx not in live:
            self.selected_panel_idx = live[0]
            self.selected_issue_idx = 0

    def cycle_panel(self, delta: int) -> None:
        live = [i for i, p in enumerate(self.panels) if p is not None]
        if not live:
            self.selected_panel_idx = None
            return
        if self.selected_panel_idx in live:
            pos = (live.index(self.selected_panel_idx) + delta) % len(live)
        else:
            pos = 0
        self.selected_panel_idx = live[pos]
        self.selected_issue_idx = 0
        self._notify()

    def move_issue_selection(self, delta: int) -> None:
        panel = self.selected_panel()
        if panel is None:
            return
        count = len(panel.snapshot()[0])
        if count == 0:
            self.selected_issue_idx = 0
        else:
            self.selected_issue_idx = max(0, min(count - 1, self.selected_issue_idx + delta))
        self._notify()

    def set_view_slot(self, idx: int, view: Dict[str, Any]) -> None:
        if not (0 <= idx < DASHBOARD_SLOT_COUNT):
            raise IndexError(f"Dashboard slot {idx} out of range")
        self.dashboard_view_list[idx] = view
        self.set_status(f"Slot {idx + 1}: {_cell(view.get('name'))}")

    def clear_view_slot(self, idx: int) -> None:
        if not (0 <= idx < DASHBOARD_SLOT_COUNT):
            raise IndexError(f"Dashboard slot {idx} out of range")
        self.dashboard_view_list[idx] = None
        self.set_status(f"Slot {idx + 1} cleared")

    def save_view_slots(self) -> None:
        try:
            save_view_list(self.dashboard_view_list)
        except OSError as exc:
            self._report_failure("Saving view configuration", exc)
            return
        self.set_status("View configuration saved")

    def reset_custom_views(self) -> None:
        # in-flight fetches keep writing into the orphaned object
        self.custom_views = CustomViewSelect()

    def open_issue_op(self, op_name: str) -> Optional[asyncio.Task]:
        # the pop-up targets this issue even if the panel rows change underneath it
        self.op_interface.open(op_name, self.selected_issue())
        self._notify()
        return self.dispatch_event("load_issue_op_data")

    # -- events ---------------------------------------------------------
    def _load_viewer(self, api_key: Optional[str] = None) -> Optional[asyncio.Task]:
        if self.token_state == TOKEN_VALIDATING:
            logger.debug("load_viewer dropped: validation in flight")
            return None
        token = (api_key or self.cfg.api_key or "").strip()
        if not token:
            self.token_state = TOKEN_INVALID
            self.set_status("No Linear API key configured")
            return None
        self.token_state = TOKEN_VALIDATING
        self._notify()
        return self._spawn(self._run_load_viewer(token, replace(self.cfg)))

    async def _run_load_viewer(self, token: str, cfg: Config) -> None:
        loop = asyncio.get_running_loop()
        try:
            viewer = await loop.run_in_executor(None, lambda: fetch_viewer(token, cfg))
        except asyncio.CancelledError:
            self.token_state = TOKEN_UNVALIDATED
            raise
        except Exception as exc:
            self.token_state = TOKEN_INVALID
            self._report_failure("Token validation", exc)
            return
        self.cfg.api_key = token
        self.viewer = viewer
        self.token_state = TOKEN_VALID
        try:
            save_access_token(token)
            save_viewer_object(viewer)
        except OSError:
            logger.warning("Unable to persist session", exc_info=True)
        logger.info("Validated token for %s", viewer.get("id"))
        self.set_status(f"Signed in as {_cell(viewer.get('displayName') or viewer.get('name'))}")

    def _load_custom_views(self) -> Optional[asyncio.Task]:
        sel = self.custom_views
        if sel.cursor.is_exhausted():
            logger.debug("load_custom_views dropped: no more pages")
            return None
        if not sel.begin_loading():
            logger.debug("load_custom_views dropped: already loading")
            return None
        self._notify()
        return self._spawn(self._run_load_custom_views(sel, replace(self.cfg), sel.cursor))

    async def _run_load_custom_views(self, sel: CustomViewSelect, cfg: Config, cursor: GraphQLCursor) -> None:
        loop = asyncio.get_running_loop()
        try:
            page = await loop.run_in_executor(None, lambda: fetch_custom_views(cfg, cursor))
            next_cursor = page.next_cursor()
        except asyncio.CancelledError:
            sel.end_loading()
            raise
        except Exception as exc:
            sel.fail(self._report_failure("Custom view fetch", exc))
            return
        sel.apply_page(page.nodes, next_cursor)
        logger.info("Loaded %d custom views", len(page.nodes))
        self._notify()

    def _load_team_timezones(self) -> Optional[asyncio.Task]:
        tz = self.timezones
        if tz.load_done or tz.load_in_progress:
            logger.debug("load_team_timezones dropped: already started")
            return None
        tz.load_in_progress = True
        return self._spawn(self._run_load_team_timezones(tz, replace(self.cfg)))

    async def _run_load_team_timezones(self, tz: TimezoneState, cfg: Config) -> None:
        loop = asyncio.get_running_loop()
        try:
            mapping = await loop.run_in_executor(None, lambda: fetch_team_timezones(cfg))
        except asyncio.CancelledError:
            tz.load_in_progress = False
            raise
        except Exception as exc:
            self._report_failure("Team timezone load", exc)
            tz.mark_ready(None, failed=True)
            self._notify()
            return
        tz.mark_ready(mapping)
        logger.info("Team timezones ready (%d teams)", len(mapping))
        self._notify()

    def _load_dashboard_views(self) -> Optional[asyncio.Task]:
        result = reconcile_panels(self.dashboard_view_list, self.panels)
        self.panels = result.panels
        self._clamp_selection()
        bundles: List[ViewLoadBundle] = []
        for idx in result.to_fetch:
            panel = result.panels[idx]
            if panel is not None and panel.begin_loading():
                bundles.append(ViewLoadBundle(cfg=replace(self.cfg), panel=panel, cursor=GraphQLCursor(), append=False))
        self._notify()
        if not bundles:
            return None
        return self._spawn(self._run_view_loads(bundles))

    def _paginate_dashboard_view(self, panel_idx: Optional[int] = None) -> Optional[asyncio.Task]:
        panel = self._panel_at(self.selected_panel_idx if panel_idx is None else panel_idx)
        if panel is None:
            return None
        if panel.cursor.is_exhausted():
            self.set_status(f"{panel.title}: no more issues")
            return None
        if not panel.begin_loading():
            logger.debug("paginate_dashboard_view dropped: %s already loading", panel.view_id)
            return None
        self._notify()
        bundle = ViewLoadBundle(cfg=replace(self.cfg), panel=panel, cursor=panel.cursor, append=True)
        return self._spawn(self._run_view_loads([bundle]))

    def _refresh_dashboard_view(self, panel_idx: Optional[int] = None) -> Optional[asyncio.Task]:
        panel = self._panel_at(self.selected_panel_idx if panel_idx is None else panel_idx)
        if panel is None:
            return None
        if not panel.begin_loading():
            logger.debug("refresh_dashboard_view dropped: %s already loading", panel.view_id)
            return None
        if self.timezones.rearm():
            logger.info("Retrying team timezone load")
        self._notify()
        bundle = ViewLoadBundle(cfg=replace(self.cfg), panel=panel, cursor=GraphQLCursor(), append=False)
        return self._spawn(self._run_view_loads([bundle]))

    async def _run_view_loads(self, bundles: List[ViewLoadBundle]) -> None:
        tz = self.timezones
        if not tz.load_done and not tz.load_in_progress:
            self.dispatch_event("load_team_timezones")
        try:
            await tz.wait_ready(self.cfg.timezone_wait_timeout)
        except asyncio.TimeoutError:
            message = "Timed out waiting for team timezones"
            logger.warning(message)
            for bundle in bundles:
                bundle.panel.fail(message)
            self.set_status(message)
            return
        except asyncio.CancelledError:
            for bundle in bundles:
                bundle.panel.end_loading()
            raise
        team_tz_map = tz.snapshot()
        await asyncio.gather(*(self._load_panel(bundle, team_tz_map) for bundle in bundles))

    async def _load_panel(self, bundle: ViewLoadBundle, team_tz_map: Dict[str, str]) -> None:
        loop = asyncio.get_running_loop()
        panel = bundle.panel
        try:
            result = await loop.run_in_executor(
                None,
                lambda: load_view_issues(bundle.cfg, panel.view, bundle.cursor, self.workflow_states, team_tz_map),
            )
        except asyncio.CancelledError:
            panel.end_loading()
            raise
        except Exception as exc:
            panel.fail(self._report_failure(f"View '{panel.title}'", exc))
            return
        panel.apply_result(result, append=bundle.append)
        self._notify()

    def _load_issue_op_data(self) -> Optional[asyncio.Task]:
        iface = self.op_interface
        issue = iface.target_issue
        if issue is None:
            self.set_status("No issue selected")
            return None
        team_id = iface.target_team_id
        if team_id is None:
            logger.warning("Issue %s has no team id; cannot load %s data", issue.get("id"), iface.current_op.name)
            self.set_status("Selected issue has no team")
            return None
        if iface.cursor.is_exhausted():
            logger.debug("load_issue_op_data dropped: no more pages")
            return None
        if not iface.begin_loading():
            logger.debug("load_issue_op_data dropped: already loading")
            return None
        self._notify()
        op = iface.current_op
        return self._spawn(self._run_load_issue_op_data(
            iface, iface.generation, op, replace(self.cfg), iface.cursor, team_id))

    async def _run_load_issue_op_data(
        self,
        iface: IssueOpInterface,
        generation: int,
        op: ModificationOp,
        cfg: Config,
        cursor: GraphQLCursor,
        team_id: str,
    ) -> None:
        loop = asyncio.get_running_loop()
        try:
            page = await loop.run_in_executor(None, lambda: fetch_op_reference_page(op, cfg, cursor, team_id))
            next_cursor = page.next_cursor()
        except asyncio.CancelledError:
            iface.end_loading()
            raise
        except Exception as exc:
            message = self._report_failure(f"{op.title} data", exc)
            if not iface.fail_session(generation, message):
                self._reload_stale_op_data(iface, op)
            self._notify()
            return
        if not iface.apply_page(generation, page.nodes, next_cursor):
            self._reload_stale_op_data(iface, op)
        self._notify()

    def _reload_stale_op_data(self, iface: IssueOpInterface, op: ModificationOp) -> None:
        logger.debug("Discarded %s data from an earlier pop-up session", op.name)
        if iface is self.op_interface and iface.active:
            self.dispatch_event("load_issue_op_data")

    def _update_issue(self) -> Optional[asyncio.Task]:
        iface = self.op_interface
        issue = iface.target_issue
        if issue is None:
            self.set_status("No issue selected")
            return None
        issue_id = iface.target_issue_id
        if issue_id is None:
            self.set_status("Selected issue has no id")
            return None
        op = iface.current_op
        value = iface.selected_value()
        value_id = value.get("id") if isinstance(value, dict) else None
        if not isinstance(value_id, str) or not value_id:
            self.set_status("Nothing selected to apply")
            return None
        self.set_status(f"Updating {_cell(issue.get('identifier')) or issue_id}…")
        return self._spawn(self._run_update_issue(op, replace(self.cfg), issue_id, value_id, copy.deepcopy(value)))

    async def _run_update_issue(
        self, op: ModificationOp, cfg: Config, issue_id: str, value_id: str, value: Dict[str, Any]
    ) -> None:
        loop = asyncio.get_running_loop()
        try:
            resp = await loop.run_in_executor(None, lambda: update_issue_field(op, cfg, issue_id, value_id))
        except Exception as exc:
            self._report_failure("Issue update", exc)
            return
        if not resp.get("success"):
            logger.warning("Issue update of %s rejected by Linear", issue_id)
            self.set_status("Issue update rejected")
            return
        returned = resp.get("issue")
        if isinstance(returned, dict) and op.record_field in returned:
            value = returned[op.record_field]
        patched = propagate_issue_update(list(self.panels), issue_id, op, value)
        self.set_status(f"{op.record_field.capitalize()} set to {op.describe(value)} ({patched} row(s))")


# -----------------------------
# Rendering helpers
# -----------------------------
def _char_width(ch: str) -> int:
    """Return printable cell width for a single character."""
    if unicodedata.combining(ch) or unicodedata.category(ch) == "Cf":
        return 0
    width = get_cwidth(ch)
    return width if width > 0 else 1


def _display_width(text: str) -> int:
    return sum(_char_width(ch) for ch in text)


def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\n", " ").replace("\r", " ")


def _truncate(s: str, maxlen: int) -> str:
    """Truncate string to a maximum display width, preserving whole glyphs."""
    s = _sanitize_cell_text(s)
    if maxlen <= 0:
        return ""
    if _display_width(s) <= maxlen:
        return s
    out: List[str] = []
    width = 0
    for ch in s:
        ch_w = _char_width(ch)
        if width + ch_w + 1 > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out) + "…"


def _pad_display(text: Optional[str], width: int) -> str:
    raw = _truncate(_sanitize_cell_text(text), width)
    return raw + " " * max(0, width - _display_width(raw))


ISSUE_ROW_COLUMNS = (("ID", 10), ("Created", 16), ("State", 14), ("Assignee", 16), ("Title", 50))


def _issue_row_text(issue: Dict[str, Any]) -> str:
    state = issue.get("state") if isinstance(issue.get("state"), dict) else {}
    assignee = issue.get("assignee") if isinstance(issue.get("assignee"), dict) else {}
    cells = (
        _cell(issue.get("identifier")),
        _cell(issue.get("createdAtLocal")),
        _cell(state.get("name")),
        _cell(assignee.get("displayName") or assignee.get("name")),
        _cell(issue.get("title")),
    )
    return "  ".join(_pad_display(c, w) for c, (_, w) in zip(cells, ISSUE_ROW_COLUMNS)).rstrip()


def build_panel_fragments(
    panel: DashboardViewPanel, slot: int, selected: bool, selected_issue_idx: int
) -> List[Tuple[str, str]]:
    """Return (style, text) tuples for one dashboard panel."""
    issues, cursor, request_num, loading, error = panel.snapshot()
    frags: List[Tuple[str, str]] = []
    title_style = "class:panel.title.selected" if selected else "class:panel.title"
    more = "" if cursor.is_exhausted() else "+"
    frags.append((title_style, f"[{slot + 1}] {panel.title}"))
    frags.append(("class:panel.meta", f"  {len(issues)}{more} issues, {request_num} requests"))
    if loading:
        frags.append(("class:panel.loading", "  loading…"))
    if error:
        frags.append(("class:panel.error", f"  ! {_truncate(error, 80)}"))
    frags.append(("", "\n"))
    if not issues:
        frags.append(("class:panel.meta", "    (no issues)" if not loading else "    …"))
        frags.append(("", "\n"))
        return frags
    for idx, issue in enumerate(issues):
        marker = ">" if selected and idx == selected_issue_idx else " "
        style = "class:row.selected" if selected and idx == selected_issue_idx else ""
        frags.append((style, f"  {marker} {_issue_row_text(issue)}"))
        frags.append(("", "\n"))
    return frags


def build_dashboard_fragments(dispatcher: DashboardDispatcher) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    for slot, panel in enumerate(dispatcher.panels):
        if panel is None:
            continue
        frags.extend(build_panel_fragments(
            panel, slot, slot == dispatcher.selected_panel_idx, dispatcher.selected_issue_idx))
        frags.append(("", "\n"))
    if not frags:
        return [("bold", "No views on the dashboard."), ("", " Press "), ("bold", "v"), ("", " to pick custom views.")]
    if frags[-1] == ("", "\n"):
        frags.pop()
    return frags


def build_view_config_fragments(dispatcher: DashboardDispatcher) -> List[Tuple[str, str]]:
    sel = dispatcher.custom_views
    frags: List[Tuple[str, str]] = [("bold", "Dashboard slots"), ("", "\n")]
    for slot, view in enumerate(dispatcher.dashboard_view_list):
        name = _cell(view.get("name")) if isinstance(view, dict) else "-"
        frags.append(("", f"  {slot + 1}. {name}\n"))
    frags.append(("", "\n"))
    frags.append(("bold", "Custom views"))
    if sel.loading:
        frags.append(("class:panel.loading", "  loading…"))
    if sel.error:
        frags.append(("class:panel.error", f"  ! {_truncate(sel.error, 80)}"))
    frags.append(("", "\n"))
    for idx, view in enumerate(list(sel.views)):
        chosen = idx == sel.selected_idx
        team = view.get("team") if isinstance(view.get("team"), dict) else {}
        line = f"  {'>' if chosen else ' '} {_pad_display(_cell(view.get('name')), 40)}  {_cell(team.get('key'))}"
        frags.append(("class:row.selected" if chosen else "", line.rstrip()))
        frags.append(("", "\n"))
    if not sel.cursor.is_exhausted() and sel.views:
        frags.append(("class:panel.meta", "  (m: load more)\n"))
    return frags


def build_op_fragments(dispatcher: DashboardDispatcher) -> List[Tuple[str, str]]:
    iface = dispatcher.op_interface
    op = iface.current_op
    issue = iface.target_issue or {}
    frags: List[Tuple[str, str]] = [
        ("bold", f"{op.title} for {_cell(issue.get('identifier')) or '?'}"),
    ]
    if iface.loading:
        frags.append(("class:panel.loading", "  loading…"))
    if iface.error:
        frags.append(("class:panel.error", f"  ! {_truncate(iface.error, 80)}"))
    frags.append(("", "\n"))
    frags.append(("bold", "    " + "  ".join(_pad_display(c, 20) for c in op.columns).rstrip()))
    frags.append(("", "\n"))
    for idx, value in enumerate(list(iface.data)):
        chosen = idx == iface.selected_idx
        cells = "  ".join(_pad_display(c, 20) for c in op.render_fields(value)).rstrip()
        frags.append(("class:row.selected" if chosen else "", f"  {'>' if chosen else ' '} {cells}"))
        frags.append(("", "\n"))
    if not iface.cursor.is_exhausted() and iface.data:
        frags.append(("class:panel.meta", "  (m: load more)\n"))
    return frags


def summarize_panels(panels: List[Optional[DashboardViewPanel]]) -> List[str]:
    lines: List[str] = []
    for slot, panel in enumerate(panels):
        if panel is None:
            continue
        issues, cursor, request_num, _, error = panel.snapshot()
        more = "" if cursor.is_exhausted() else "+"
        line = f"[{slot + 1}] {panel.title}: {len(issues)}{more} issues ({request_num} requests)"
        if error:
            line += f" ERROR: {error}"
        lines.append(line)
    return lines


# -----------------------------
# TUI
# -----------------------------
def run_ui(dispatcher: DashboardDispatcher, log_level: str = 'ERROR') -> None:
    """Full-screen dashboard with the view editor and the issue edit pop-up."""
    mode = 'dashboard'

    def build_command_bar() -> List[Tuple[str, str]]:
        viewer = dispatcher.viewer or {}
        who = _cell(viewer.get("displayName") or viewer.get("name")) or dispatcher.token_state
        if mode == 'dashboard':
            keys = "tab panel  j/k issue  r refresh  m more  S/A/P/C edit  v views  q quit"
        elif mode == 'views':
            keys = "j/k move  1-6 assign  !@#$%^ clear  m more  w save  esc back"
        else:
            keys = "j/k move  m more  enter apply  esc cancel"
        return [("reverse", f" linear-dash | {who} | {keys} ")]

    def build_body() -> List[Tuple[str, str]]:
        if mode == 'views':
            return build_view_config_fragments(dispatcher)
        if mode == 'op':
            return build_op_fragments(dispatcher)
        return build_dashboard_fragments(dispatcher)

    command_window = Window(height=1, content=FormattedTextControl(text=lambda: build_command_bar()))
    body_window = Window(content=FormattedTextControl(text=lambda: build_body()), wrap_lines=False, always_hide_cursor=True)
    status_window = Window(height=1, content=FormattedTextControl(text=lambda: [("reverse", f" {dispatcher.status_line} ")]))
    container = HSplit([command_window, body_window, status_window], height=Dimension())

    style = Style.from_dict({
        'panel.title': 'bold',
        'panel.title.selected': 'bold ansicyan',
        'panel.meta': 'ansibrightblack',
        'panel.loading': 'ansiyellow',
        'panel.error': 'ansired',
        'row.selected': 'reverse',
    })

    kb = KeyBindings()
    in_dashboard = Condition(lambda: mode == 'dashboard')
    in_views = Condition(lambda: mode == 'views')
    in_op = Condition(lambda: mode == 'op')

    @kb.add('q', filter=in_dashboard)
    def _(event):
        dispatcher.shutdown()
        event.app.exit()

    @kb.add('c-c')
    def _(event):
        dispatcher.shutdown()
        event.app.exit()

    @kb.add('tab', filter=in_dashboard)
    def _(event):
        dispatcher.cycle_panel(1)

    @kb.add('s-tab', filter=in_dashboard)
    def _(event):
        dispatcher.cycle_panel(-1)

    @kb.add('j', filter=in_dashboard)
    @kb.add('down', filter=in_dashboard)
    def _(event):
        dispatcher.move_issue_selection(1)

    @kb.add('k', filter=in_dashboard)
    @kb.add('up', filter=in_dashboard)
    def _(event):
        dispatcher.move_issue_selection(-1)

    @kb.add('r', filter=in_dashboard)
    def _(event):
        dispatcher.dispatch_event("refresh_dashboard_view")

    @kb.add('m', filter=in_dashboard)
    def _(event):
        dispatcher.dispatch_event("paginate_dashboard_view")

    for key_name, op_name in (('S', 'workflow_state'), ('A', 'assignee'), ('P', 'project'), ('C', 'cycle')):
        @kb.add(key_name, filter=in_dashboard)
        def _(event, op_name=op_name):
            nonlocal mode
            if dispatcher.selected_issue() is None:
                dispatcher.set_status("No issue selected")
                return
            mode = 'op'
            dispatcher.open_issue_op(op_name)

    @kb.add('v', filter=in_dashboard)
    def _(event):
        nonlocal mode
        mode = 'views'
        dispatcher.reset_custom_views()
        dispatcher.dispatch_event("load_custom_views")

    # View configuration
    @kb.add('j', filter=in_views)
    @kb.add('down', filter=in_views)
    def _(event):
        dispatcher.custom_views.move_selection(1)

    @kb.add('k', filter=in_views)
    @kb.add('up', filter=in_views)
    def _(event):
        dispatcher.custom_views.move_selection(-1)

    @kb.add('m', filter=in_views)
    def _(event):
        dispatcher.dispatch_event("load_custom_views")

    for slot in range(DASHBOARD_SLOT_COUNT):
        @kb.add(str(slot + 1), filter=in_views)
        def _(event, slot=slot):
            view = dispatcher.custom_views.selected_view()
            if view is not None:
                dispatcher.set_view_slot(slot, view)

        @kb.add(SHIFTED_DIGIT_KEYS[slot], filter=in_views)
        def _(event, slot=slot):
            dispatcher.clear_view_slot(slot)

    @kb.add('w', filter=in_views)
    def _(event):
        dispatcher.save_view_slots()

    @kb.add('escape', filter=in_views)
    def _(event):
        nonlocal mode
        mode = 'dashboard'
        dispatcher.dispatch_event("load_dashboard_views")

    # Issue edit pop-up
    @kb.add('j', filter=in_op)
    @kb.add('down', filter=in_op)
    def _(event):
        dispatcher.op_interface.move_selection(1)

    @kb.add('k', filter=in_op)
    @kb.add('up', filter=in_op)
    def _(event):
        dispatcher.op_interface.move_selection(-1)

    @kb.add('m', filter=in_op)
    def _(event):
        dispatcher.dispatch_event("load_issue_op_data")

    @kb.add('enter', filter=in_op)
    def _(event):
        nonlocal mode
        if dispatcher.dispatch_event("update_issue") is not None:
            dispatcher.op_interface.close()
            mode = 'dashboard'

    @kb.add('escape', filter=in_op)
    def _(event):
        nonlocal mode
        dispatcher.op_interface.close()
        mode = 'dashboard'

    app = Application(layout=Layout(container), key_bindings=kb, full_screen=True, style=style)
    dispatcher.on_change = app.invalidate

    # Background ticker so loading markers and status stay fresh
    async def _ticker():
        while True:
            try:
                await asyncio.sleep(1)
                app.invalidate()
            except Exception:
                logger.exception("UI ticker failed")
                await asyncio.sleep(1)

    def _startup():
        app.create_background_task(_ticker())
        dispatcher.dispatch_event("load_viewer")
        dispatcher.dispatch_event("load_team_timezones")
        dispatcher.dispatch_event("load_dashboard_views")

    logger.info("Starting UI (log level %s)", log_level)
    app.run(pre_run=_startup)


async def _run_headless(cfg: Config, view_list: Optional[List[Optional[Dict[str, Any]]]]) -> int:
    dispatcher = DashboardDispatcher(cfg, view_list=view_list)
    task = dispatcher.dispatch_event("load_viewer")
    if task is not None:
        await task
    if dispatcher.token_state != TOKEN_VALID:
        print(dispatcher.status_line or "Token validation failed", file=sys.stderr)
        return 1
    dispatcher.dispatch_event("load_team_timezones")
    dispatcher.dispatch_event("load_dashboard_views")
    await dispatcher.wait_idle()
    print(dispatcher.status_line)
    lines = summarize_panels(dispatcher.panels)
    if not lines:
        print("No dashboard views configured.")
    for line in lines:
        print(line)
    return 0


DEFAULT_CONFIG_PATH = os.path.expanduser("~/.linear_dash.yaml")


def main() -> None:
    ap = argparse.ArgumentParser(description="Linear custom view dashboard")
    ap.add_argument("--config", default=None, help=f"Path to YAML config (default {DEFAULT_CONFIG_PATH})")
    ap.add_argument("--api-key", default=None, help="Linear personal API key (overrides LINEAR_API_KEY)")
    ap.add_argument("--no-ui", action="store_true", help="Load the dashboard once, print a summary and exit")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    args = ap.parse_args()

    config_path = args.config or DEFAULT_CONFIG_PATH
    if os.path.isfile(config_path):
        cfg = load_config(config_path)
    elif args.config:
        print(f"Config file not found: {args.config}", file=sys.stderr)
        sys.exit(2)
    else:
        cfg = Config()

    # Token precedence: CLI, env var, .env, saved session, config file
    token = (args.api_key or os.environ.get("LINEAR_API_KEY") or load_dotenv_token()
             or load_access_token() or cfg.api_key)
    if not token:
        print("LINEAR_API_KEY is not set (use --api-key, the environment, .env or the config file).", file=sys.stderr)
        sys.exit(1)
    cfg.api_key = token

    configure_logging(args.log_level)
    view_list = read_view_list()

    if args.no_ui:
        sys.exit(asyncio.run(_run_headless(cfg, view_list)))

    run_ui(DashboardDispatcher(cfg, view_list=view_list), log_level=args.log_level)


if __name__ == "__main__":
    main()
