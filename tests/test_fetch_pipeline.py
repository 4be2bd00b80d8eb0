import copy

import pytest

import linear_dash as ld


def _issue(n: int, team_id: str = 't1') -> dict:
    return {
        'id': f'issue-{n}',
        'identifier': f'ENG-{n}',
        'title': f'Issue {n}',
        'createdAt': '2024-01-15T12:00:00.000Z',
        'team': {'id': team_id, 'key': 'ENG'},
    }


def _fake_issue_server(total: int, cap: int):
    """Return (fake fetch_issues_by_filter, call log) serving `total` issues, at most `cap` per page."""
    issues = [_issue(n) for n in range(total)]
    calls = []

    def fake_fetch(cfg, filter_data, cursor, page_size):
        calls.append({'after': cursor.after, 'page_size': page_size, 'filter': copy.deepcopy(filter_data)})
        start = int(cursor.after) if cursor.after else 0
        end = min(total, start + min(cap, page_size))
        return ld.PageResult(
            nodes=[dict(i) for i in issues[start:end]],
            page_info={'hasNextPage': end < total, 'endCursor': str(end) if end else None},
        )

    return fake_fetch, calls


def _empty_catalog():
    return ld.WorkflowStateCatalog(lambda: [{'id': 's1', 'name': 'Todo'}])


def test_resolver_pages_until_target(monkeypatch, cfg):
    fake, calls = _fake_issue_server(total=20, cap=2)
    monkeypatch.setattr(ld, 'fetch_issues_by_filter', fake)

    result = ld.fetch_view_issues(ld.GraphQLCursor(), 5, None, cfg, _empty_catalog())

    assert [i['identifier'] for i in result.issues] == ['ENG-0', 'ENG-1', 'ENG-2', 'ENG-3', 'ENG-4']
    assert result.request_num == 3
    assert [c['page_size'] for c in calls] == [5, 3, 1]
    assert result.cursor.is_exhausted() is False
    assert result.cursor.after == '5'


def test_resolver_stops_when_pages_run_out(monkeypatch, cfg):
    fake, calls = _fake_issue_server(total=3, cap=2)
    monkeypatch.setattr(ld, 'fetch_issues_by_filter', fake)

    result = ld.fetch_view_issues(ld.GraphQLCursor(), 10, None, cfg, _empty_catalog())

    assert len(result.issues) == 3
    assert result.request_num == 2
    assert result.cursor.is_exhausted() is True


def test_resolver_continues_from_returned_cursor(monkeypatch, cfg):
    fake, calls = _fake_issue_server(total=6, cap=10)
    monkeypatch.setattr(ld, 'fetch_issues_by_filter', fake)

    first = ld.fetch_view_issues(ld.GraphQLCursor(), 4, None, cfg, _empty_catalog())
    second = ld.fetch_view_issues(first.cursor, 4, None, cfg, _empty_catalog())

    assert [i['identifier'] for i in second.issues] == ['ENG-4', 'ENG-5']
    assert calls[1]['after'] == '4'
    assert second.cursor.is_exhausted() is True


def test_resolver_with_exhausted_cursor_sends_nothing(monkeypatch, cfg):
    fake, calls = _fake_issue_server(total=6, cap=10)
    monkeypatch.setattr(ld, 'fetch_issues_by_filter', fake)
    done = ld.GraphQLCursor(end_cursor='6', has_next_page=False, platform=ld.PLATFORM_LINEAR)

    result = ld.fetch_view_issues(done, 4, None, cfg, _empty_catalog())

    assert result.issues == []
    assert result.request_num == 0
    assert result.cursor == done
    assert calls == []


def test_resolver_normalizes_a_copy_of_the_filter(monkeypatch, cfg):
    fake, calls = _fake_issue_server(total=1, cap=10)
    monkeypatch.setattr(ld, 'fetch_issues_by_filter', fake)
    view_filter = {'and': [{'state': {'name': {'in': ['todo']}}}]}

    ld.fetch_view_issues(ld.GraphQLCursor(), 4, view_filter, cfg, _empty_catalog())

    assert calls[0]['filter'] == {'and': [{'state': {'name': {'in': ['Todo']}}}]}
    assert view_filter == {'and': [{'state': {'name': {'in': ['todo']}}}]}


def test_resolver_unknown_state_fails_before_any_request(monkeypatch, cfg):
    fake, calls = _fake_issue_server(total=1, cap=10)
    monkeypatch.setattr(ld, 'fetch_issues_by_filter', fake)

    with pytest.raises(ld.FilterValueError):
        ld.fetch_view_issues(ld.GraphQLCursor(), 4, {'and': [{'state': {'name': {'in': ['nope']}}}]}, cfg, _empty_catalog())
    assert calls == []


def test_resolver_malformed_nodes_is_protocol_error(monkeypatch, cfg):
    def fake_graphql(_session, _query, _variables, **kwargs):
        return {'data': {'issues': {'nodes': 'oops', 'pageInfo': {'hasNextPage': False, 'endCursor': None}}}}

    monkeypatch.setattr(ld, '_graphql_with_backoff', fake_graphql)

    with pytest.raises(ld.ProtocolError):
        ld.fetch_view_issues(ld.GraphQLCursor(), 4, None, cfg, _empty_catalog())


def test_resolver_missing_page_info_is_protocol_error(monkeypatch, cfg):
    def fake_graphql(_session, _query, _variables, **kwargs):
        return {'data': {'issues': {'nodes': [_issue(1)]}}}

    monkeypatch.setattr(ld, '_graphql_with_backoff', fake_graphql)

    with pytest.raises(ld.ProtocolError):
        ld.fetch_view_issues(ld.GraphQLCursor(), 4, None, cfg, _empty_catalog())


def test_load_view_issues_localizes_created_at(monkeypatch, cfg):
    issues = [_issue(1, 't-ny'), _issue(2, 't-unknown'), _issue(3, 't-bad')]

    def fake_fetch(cfg, filter_data, cursor, page_size):
        return ld.PageResult(nodes=[dict(i) for i in issues], page_info={'hasNextPage': False, 'endCursor': None})

    monkeypatch.setattr(ld, 'fetch_issues_by_filter', fake_fetch)
    view = {'id': 'v1', 'name': 'Mine', 'filterData': {}}
    tz_map = {'t-ny': 'America/New_York', 't-bad': 'Not/AZone'}

    result = ld.load_view_issues(cfg, view, None, _empty_catalog(), tz_map)

    local = {i['identifier']: i['createdAtLocal'] for i in result.issues}
    assert local == {'ENG-1': '2024-01-15 07:00', 'ENG-2': '2024-01-15 12:00', 'ENG-3': '2024-01-15 12:00'}


def test_load_view_issues_rejects_non_object_filter(cfg):
    with pytest.raises(ld.FilterValueError):
        ld.load_view_issues(cfg, {'id': 'v1', 'filterData': ['x']}, None, _empty_catalog(), {})


def test_run_query_graphql_errors_become_fetch_error(monkeypatch, cfg):
    monkeypatch.setattr(ld, '_graphql_with_backoff',
                        lambda _s, _q, _v, **kw: {'errors': [{'message': 'Authentication required'}]})

    with pytest.raises(ld.FetchError) as excinfo:
        ld.fetch_viewer('bad-key', cfg)
    assert 'Authentication required' in str(excinfo.value)


def test_run_query_without_key_is_fetch_error(cfg):
    with pytest.raises(ld.FetchError):
        ld.fetch_custom_views(ld.Config(api_key=''), ld.GraphQLCursor())


def test_fetch_issues_sends_cursor_and_filter(monkeypatch, cfg):
    seen = {}

    def fake_graphql(_session, query, variables, **kwargs):
        seen.update(variables)
        seen['timeout'] = kwargs.get('timeout')
        return {'data': {'issues': {'nodes': [], 'pageInfo': {'hasNextPage': False, 'endCursor': None}}}}

    monkeypatch.setattr(ld, '_graphql_with_backoff', fake_graphql)
    cursor = ld.GraphQLCursor(end_cursor='abc', has_next_page=True, platform=ld.PLATFORM_LINEAR)

    ld.fetch_issues_by_filter(cfg, {'and': []}, cursor, 7)

    assert seen['firstNum'] == 7
    assert seen['afterCursor'] == 'abc'
    assert seen['filterObj'] == {'and': []}
    assert seen['timeout'] == cfg.request_timeout


def test_update_issue_field_uses_op_input_key(monkeypatch, cfg):
    seen = {}

    def fake_graphql(_session, query, variables, **kwargs):
        seen.update(variables)
        return {'data': {'issueUpdate': {'success': True, 'issue': {'id': 'issue-1'}}}}

    monkeypatch.setattr(ld, '_graphql_with_backoff', fake_graphql)

    resp = ld.update_issue_field(ld.MODIFICATION_OPS['cycle'], cfg, 'issue-1', 'cycle-9')

    assert resp == {'success': True, 'issue': {'id': 'issue-1'}}
    assert seen == {'issueId': 'issue-1', 'input': {'cycleId': 'cycle-9'}}


def test_op_reference_page_reads_team_connection(monkeypatch, cfg):
    seen = {}

    def fake_graphql(_session, query, variables, **kwargs):
        seen['query'] = query
        seen.update(variables)
        return {'data': {'team': {'members': {
            'nodes': [{'id': 'u1', 'name': 'Ada', 'displayName': 'ada', 'email': 'ada@example.com'}],
            'pageInfo': {'hasNextPage': True, 'endCursor': 'm1'},
        }}}}

    monkeypatch.setattr(ld, '_graphql_with_backoff', fake_graphql)

    page = ld.fetch_op_reference_page(ld.MODIFICATION_OPS['assignee'], cfg, ld.GraphQLCursor(), 'team-1')

    assert seen['ref'] == 'team-1'
    assert seen['firstNum'] == cfg.op_page_size
    assert seen['query'] == ld.GQL_TEAM_MEMBERS
    assert page.nodes[0]['email'] == 'ada@example.com'
    assert page.next_cursor().after == 'm1'


def test_op_reference_page_missing_team_is_protocol_error(monkeypatch, cfg):
    monkeypatch.setattr(ld, '_graphql_with_backoff', lambda _s, _q, _v, **kw: {'data': {'team': None}})

    with pytest.raises(ld.ProtocolError):
        ld.fetch_op_reference_page(ld.MODIFICATION_OPS['project'], cfg, ld.GraphQLCursor(), 'team-1')


def test_fetch_team_timezones_pages_to_exhaustion(monkeypatch, cfg):
    pages = {
        None: {'data': {'teams': {'nodes': [{'id': 't1', 'timezone': 'Europe/Prague'}],
                                  'pageInfo': {'hasNextPage': True, 'endCursor': 'c1'}}}},
        'c1': {'data': {'teams': {'nodes': [{'id': 't2', 'timezone': 'Asia/Tokyo'}, {'id': 't3', 'timezone': None}],
                                  'pageInfo': {'hasNextPage': False, 'endCursor': 'c2'}}}},
    }
    monkeypatch.setattr(ld, '_graphql_with_backoff', lambda _s, _q, variables, **kw: pages[variables['afterCursor']])

    assert ld.fetch_team_timezones(cfg) == {'t1': 'Europe/Prague', 't2': 'Asia/Tokyo'}


def test_backoff_retries_rate_limited_response(monkeypatch):
    responses = [
        {'errors': [{'message': 'slow down', 'extensions': {'code': 'RATELIMITED'}}]},
        {'data': {'viewer': {'id': 'u1'}}},
    ]
    waits = []
    monkeypatch.setattr(ld, '_graphql_raw', lambda *a, **kw: responses.pop(0))
    monkeypatch.setattr(ld.time, 'sleep', lambda s: waits.append(s))

    resp = ld._graphql_with_backoff(object(), 'q', {}, max_total_wait=60)

    assert resp == {'data': {'viewer': {'id': 'u1'}}}
    assert waits == [5]


def test_backoff_gives_up_after_max_wait(monkeypatch):
    limited = {'errors': [{'message': 'slow down', 'extensions': {'code': 'RATELIMITED'}}]}
    monkeypatch.setattr(ld, '_graphql_raw', lambda *a, **kw: limited)
    monkeypatch.setattr(ld.time, 'sleep', lambda s: None)

    resp = ld._graphql_with_backoff(object(), 'q', {}, max_total_wait=10)

    assert resp is limited
