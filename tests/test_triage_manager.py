"""
Tests for the TriageManager CLI layer
"""

import os
import signal
from unittest.mock import patch

import pytest
import yaml

from integrations.todoist import RemoteErrorKind
from models import Project, Section
from ordering import TriageMode
from triage import (
    AddLabel,
    ClearDue,
    Complete,
    MoveToNewProject,
    MoveToProject,
    Quit,
    RemoveLabel,
    Reschedule,
    SetPriority,
    Skip,
    SkipPolicy,
    Undo,
)
from triage_manager import TriageManager, deferred_interrupt, main, parse_decision, run_session


PROJECTS = [Project('inbox', 'Inbox'), Project('work', 'Work')]
SECTIONS = [Section('backlog', 'Backlog', 'work'), Section('later', 'Later', 'inbox')]


@pytest.fixture
def config():
    return {
        'todoist': {'api_token': 'test-token', 'max_attempts': 2},
        'cache': {'ttl_seconds': 60},
        'due_dates': {'locale': 'en'},
        'triage': {'skip': {'process': 'dismiss'}},
    }


@pytest.fixture
def manager(config, fake_todoist, make_engine):
    manager = TriageManager(config=config)
    manager.engine = make_engine(fake_todoist)
    manager.resolver = manager.engine.resolver
    return manager


class Script:
    """Feeds scripted operator input and collects output"""

    def __init__(self, *lines):
        self.lines = list(lines)
        self.output = []

    def read(self, prompt):
        if not self.lines:
            raise EOFError
        return self.lines.pop(0)

    def write(self, text):
        self.output.append(text)

    @property
    def text(self):
        return '\n'.join(self.output)


class TestParseDecision:

    @pytest.mark.parametrize("text, expected", [
        ("c", Complete()),
        ("S", Skip()),
        ("d", Skip(dismiss=True)),
        ("x", ClearDue()),
        ("u", Undo()),
        ("q", Quit()),
        ("+waiting", AddLabel('waiting')),
        ("-errand", RemoveLabel('errand')),
        ("r next fri at 3pm", Reschedule('next fri at 3pm')),
    ])
    def test_simple_decisions(self, text, expected):
        assert parse_decision(text) == expected

    def test_priorities_are_typed_as_todoist_shows_them(self):
        assert parse_decision("p1") == SetPriority(4)
        assert parse_decision("p 4") == SetPriority(1)
        with pytest.raises(ValueError):
            parse_decision("p 5")

    def test_move_to_project_and_section(self):
        assert parse_decision("m work", PROJECTS, SECTIONS) == MoveToProject('work')
        assert parse_decision("m Work/backlog", PROJECTS, SECTIONS) == MoveToProject('work', 'backlog')

    def test_move_to_new_project(self):
        assert parse_decision("m +Garden shed", PROJECTS, SECTIONS) == MoveToNewProject('Garden shed')

    def test_move_to_unknown_destination(self):
        with pytest.raises(ValueError):
            parse_decision("m Garden", PROJECTS, SECTIONS)
        # section exists, but in another project
        with pytest.raises(ValueError):
            parse_decision("m work/later", PROJECTS, SECTIONS)

    def test_free_text_is_a_date_only_when_scheduling(self):
        assert parse_decision("tomorrow", default_reschedule=True) == Reschedule('tomorrow')
        with pytest.raises(ValueError):
            parse_decision("tomorrow")

    def test_empty_input(self):
        with pytest.raises(ValueError):
            parse_decision("   ")


class TestConfig:

    def test_skip_policies_from_config(self, config):
        manager = TriageManager(config=config)
        assert manager.engine.skip_policies == {TriageMode.PROCESS: SkipPolicy.DISMISS}
        assert manager.client.retry.max_attempts == 2
        assert manager.cache.ttl_seconds == 60

    def test_load_config_file(self, tmp_path, config):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump(config))
        manager = TriageManager(config_path=str(path))
        assert manager.config['todoist']['api_token'] == 'test-token'

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            TriageManager(config_path=str(tmp_path / 'nope.yaml'))

    def test_missing_token(self):
        with patch.dict(os.environ, clear=True):
            with pytest.raises(ValueError):
                TriageManager(config={})

    def test_task_filter_resolves_project_name(self, manager):
        assert manager.task_filter(project='work').project_id == 'work'
        assert manager.task_filter(project='INBOX', label='errand').label == 'errand'
        with pytest.raises(ValueError):
            manager.task_filter(project='Garden')


class TestRunSession:

    def test_scripted_session(self, manager, fake_todoist):
        script = Script("c", "bogus", "p1", "u", "d", "m inbox")
        code = run_session(manager, TriageMode.PROCESS, manager.task_filter(), script.read, script.write)

        assert code == 0
        assert fake_todoist.closed == {'1'}
        assert fake_todoist.tasks['2'].priority == 3
        assert fake_todoist.tasks['3'].project_id == 'inbox'
        assert "Unknown decision 'bogus'" in script.text
        assert "Done: 2 task(s) processed" in script.text

    def test_end_of_input_exits_cleanly(self, manager):
        script = Script("c")
        code = run_session(manager, TriageMode.PROCESS, manager.task_filter(), script.read, script.write)
        assert code == 0
        assert "Exited: 1 task(s) processed" in script.text

    def test_free_text_reschedules_in_schedule_mode(self, manager, fake_todoist):
        script = Script("tomorrow", "q")
        run_session(manager, TriageMode.SCHEDULE, manager.task_filter(), script.read, script.write)
        assert fake_todoist.calls_to('update_task')[0][2] == {'due_date': '2024-01-11'}

    def test_auth_failure_exit_code(self, manager, fake_todoist):
        fake_todoist.fail('close_task', RemoteErrorKind.REJECTED, code=403)
        script = Script("c")
        code = run_session(manager, TriageMode.PROCESS, manager.task_filter(), script.read, script.write)
        assert code == 1
        assert "Session aborted" in script.text

    def test_transient_failure_is_shown_and_task_stays(self, manager, fake_todoist):
        fake_todoist.fail('close_task')
        script = Script("c", "q")
        run_session(manager, TriageMode.PROCESS, manager.task_filter(), script.read, script.write)
        assert "⚠️" in script.text
        assert fake_todoist.closed == set()

    def test_move_to_a_new_project(self, manager, fake_todoist):
        script = Script("m +Garden")
        run_session(manager, TriageMode.PROCESS, manager.task_filter(), script.read, script.write)

        garden = next(p for p in fake_todoist.projects if p.name == "Garden")
        assert fake_todoist.tasks['1'].project_id == garden.id
        assert "Exited: 1 task(s) processed" in script.text

    def test_failed_section_lookup_is_reported(self, manager, fake_todoist):
        fake_todoist.fail('list_sections')
        script = Script("m work/backlog", "q")
        run_session(manager, TriageMode.PROCESS, manager.task_filter(), script.read, script.write)

        assert "[task 1] Could not load sections" in script.text
        assert "No project named" not in script.text
        assert fake_todoist.calls_to('move_task') == []

    def test_interrupt_during_lookup_ends_session(self, manager):
        script = Script("m work")
        with patch.object(manager.engine, 'projects', side_effect=KeyboardInterrupt):
            code = run_session(manager, TriageMode.PROCESS, manager.task_filter(), script.read, script.write)
        assert code == 0
        assert "Exited: 0 task(s) processed" in script.text

    def test_first_presentation_error_is_shown(self, manager, fake_todoist):
        fake_todoist.fail('list_projects')
        script = Script()
        run_session(manager, TriageMode.PROCESS, manager.task_filter(), script.read, script.write)

        assert "Could not load project names" in script.text
        assert len(fake_todoist.calls_to('list_projects')) == 1


class TestDeferredInterrupt:

    def test_interrupt_is_held_until_the_block_ends(self):
        previous = signal.getsignal(signal.SIGINT)
        with deferred_interrupt() as interrupted:
            os.kill(os.getpid(), signal.SIGINT)
        assert interrupted == [signal.SIGINT]
        assert signal.getsignal(signal.SIGINT) is previous


class TestMain:

    def test_resolve_command(self, tmp_path, config, capsys):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump(config))
        assert main(['resolve', 'tomorrow', '--config', str(path)]) == 0
        assert "Tomorrow" in capsys.readouterr().out

    def test_resolve_bad_text(self, tmp_path, config, capsys):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump(config))
        assert main(['resolve', 'blorp', '--config', str(path)]) == 1
        assert "❌" in capsys.readouterr().out

    def test_missing_config(self, tmp_path, capsys):
        assert main(['next', '--config', str(tmp_path / 'missing.yaml')]) == 1
        assert "Failed to initialize" in capsys.readouterr().out
