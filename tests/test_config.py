import json
import logging
import os
import sys

import pytest

import linear_dash as ld


def test_load_config_defaults_and_overrides(tmp_path):
    path = tmp_path / 'cfg.yaml'
    path.write_text('view_panel_page_size: 25\nrequest_timeout: 10\ntimezone_wait_timeout: 2.5\nunknown: 1\n')

    cfg = ld.load_config(str(path))

    assert cfg.view_panel_page_size == 25
    assert cfg.request_timeout == 10
    assert cfg.timezone_wait_timeout == 2.5
    assert cfg.custom_view_page_size == 50
    assert cfg.api_key == ''


def test_load_config_empty_file_gives_defaults(tmp_path):
    path = tmp_path / 'cfg.yaml'
    path.write_text('')
    assert ld.load_config(str(path)) == ld.Config()


@pytest.mark.parametrize('body', [
    'view_panel_page_size: 0\n',
    'op_page_size: lots\n',
    'max_rate_limit_wait: -1\n',
    '- just\n- a list\n',
])
def test_load_config_rejects_bad_values(tmp_path, body):
    path = tmp_path / 'cfg.yaml'
    path.write_text(body)
    with pytest.raises(ValueError):
        ld.load_config(str(path))


def test_view_list_cache_is_padded_to_slot_count(temp_state_paths):
    _, views_path = temp_state_paths
    views_path.write_text(json.dumps([{'id': 'v1', 'name': 'Mine'}, None, {'name': 'no id'}]))

    slots = ld.read_view_list()

    assert len(slots) == ld.DASHBOARD_SLOT_COUNT
    assert slots[0] == {'id': 'v1', 'name': 'Mine'}
    assert slots[1:] == [None] * 5


def test_view_list_cache_round_trip_and_missing(temp_state_paths):
    assert ld.read_view_list() is None
    slots = [{'id': 'v1', 'name': 'Mine'}] + [None] * 5
    ld.save_view_list(slots)
    assert ld.read_view_list() == slots


def test_corrupt_view_list_cache_is_ignored(temp_state_paths):
    _, views_path = temp_state_paths
    views_path.write_text('{not json')
    assert ld.read_view_list() is None


def test_session_file_is_private(temp_state_paths):
    session_path, _ = temp_state_paths
    assert ld.load_access_token() is None

    ld.save_access_token('lin_api_x')

    assert ld.load_access_token() == 'lin_api_x'
    assert (os.stat(session_path).st_mode & 0o777) == 0o600


def test_load_dotenv_token_reads_linear_key(monkeypatch, tmp_path):
    (tmp_path / '.env').write_text('# comment\nLINEAR_API_KEY="lin_api_env"\n')
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv('LINEAR_API_KEY', 'placeholder')
    monkeypatch.delenv('LINEAR_API_KEY')

    assert ld.load_dotenv_token() == 'lin_api_env'
    assert os.environ['LINEAR_API_KEY'] == 'lin_api_env'


def test_configure_logging_filters_at_handler(tmp_path):
    log_path = tmp_path / 'linear_dash.log'

    ld.configure_logging('warning', str(log_path))
    ld.logger.info('hidden')
    ld.logger.warning('shown')
    for h in ld.logger.handlers:
        h.flush()

    text = log_path.read_text()
    assert 'shown' in text
    assert 'hidden' not in text
    assert ld.logger.level == logging.DEBUG
    for h in list(ld.logger.handlers):
        ld.logger.removeHandler(h)
        h.close()


def test_summarize_panels_reports_counts_and_errors():
    ok = ld.DashboardViewPanel({'id': 'a', 'name': 'Mine'})
    ok.apply_result(ld.ViewFetchResult(
        issues=[{'id': '1'}, {'id': '2'}],
        cursor=ld.GraphQLCursor(end_cursor='c', has_next_page=True, platform=ld.PLATFORM_LINEAR),
        request_num=1,
    ), append=False)
    bad = ld.DashboardViewPanel({'id': 'b', 'name': 'Broken'})
    bad.fail('Issue fetch failed: 500')

    lines = ld.summarize_panels([ok, None, bad])

    assert lines == [
        '[1] Mine: 2+ issues (1 requests)',
        '[3] Broken: 0+ issues (0 requests) ERROR: Issue fetch failed: 500',
    ]


def test_panel_fragments_mark_selection_and_errors():
    panel = ld.DashboardViewPanel({'id': 'a', 'name': 'Mine'})
    panel.apply_result(ld.ViewFetchResult(
        issues=[{'id': '1', 'identifier': 'ENG-1', 'title': 'Fix it', 'createdAtLocal': '2024-01-15 07:00',
                 'state': {'name': 'Todo'}, 'assignee': {'displayName': 'ada'}}],
        cursor=ld.GraphQLCursor(end_cursor=None, has_next_page=False, platform=ld.PLATFORM_LINEAR),
        request_num=1,
    ), append=False)
    panel.begin_loading()
    panel.fail('boom')

    frags = ld.build_panel_fragments(panel, 0, True, 0)
    text = ''.join(t for _, t in frags)

    assert '[1] Mine' in text
    assert '! boom' in text
    assert '> ENG-1' in text
    assert '2024-01-15 07:00' in text
    assert ('class:panel.title.selected', '[1] Mine') in frags


def test_truncate_respects_display_width():
    assert ld._truncate('abcdef', 4) == 'abc…'
    assert ld._truncate('ab', 4) == 'ab'
    assert ld._pad_display('ab', 4) == 'ab  '


def test_main_without_token_exits_1(monkeypatch, tmp_path, temp_state_paths, capsys):
    monkeypatch.setenv('LINEAR_API_KEY', 'placeholder')
    monkeypatch.delenv('LINEAR_API_KEY')
    monkeypatch.setattr(ld, 'load_dotenv_token', lambda: None)
    monkeypatch.setattr(ld, 'DEFAULT_CONFIG_PATH', str(tmp_path / 'missing.yaml'))
    monkeypatch.setattr(sys, 'argv', ['linear-dash', '--no-ui'])

    with pytest.raises(SystemExit) as excinfo:
        ld.main()

    assert excinfo.value.code == 1
    assert 'LINEAR_API_KEY' in capsys.readouterr().err


def test_main_no_ui_prints_summary(monkeypatch, tmp_path, temp_state_paths, capsys):
    _, views_path = temp_state_paths
    views_path.write_text(json.dumps([{'id': 'v1', 'name': 'Mine', 'filterData': {}}]))
    monkeypatch.setattr(ld, 'DEFAULT_CONFIG_PATH', str(tmp_path / 'missing.yaml'))
    monkeypatch.setattr(ld, 'configure_logging', lambda level: str(tmp_path / 'x.log'))
    monkeypatch.setattr(ld, 'fetch_viewer', lambda key, cfg: {'id': 'u1', 'name': 'Ada'})
    monkeypatch.setattr(ld, 'fetch_team_timezones', lambda cfg: {})
    monkeypatch.setattr(ld, 'load_view_issues', lambda cfg, view, cursor, catalog, tz: ld.ViewFetchResult(
        issues=[{'id': 'i1'}],
        cursor=ld.GraphQLCursor(end_cursor=None, has_next_page=False, platform=ld.PLATFORM_LINEAR),
        request_num=1,
    ))
    monkeypatch.setattr(sys, 'argv', ['linear-dash', '--no-ui', '--api-key', 'lin_api_cli'])

    with pytest.raises(SystemExit) as excinfo:
        ld.main()

    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert '[1] Mine: 1 issues (1 requests)' in out
