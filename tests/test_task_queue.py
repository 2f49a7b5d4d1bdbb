import pytest

from web_fleet.errors import QueueBuildError
from web_fleet.models import Environment, RoutineRef, ScheduleMode
from web_fleet.task_queue import build_task_queue


def _routines(*names):
    return [RoutineRef(path=f"registered:{name}", name=name) for name in names]


def test_per_environment_runs_every_routine_in_one_task(envs):
    tasks = build_task_queue(envs(3), _routines("a", "b"), ScheduleMode.per_environment)

    assert [task.id for task in tasks] == ["1:env-1", "2:env-2", "3:env-3"]
    assert [task.label for task in tasks] == ["[1/3]", "[2/3]", "[3/3]"]
    assert all([ref.name for ref in task.routines] == ["a", "b"] for task in tasks)
    assert all(task.round is None for task in tasks)


def test_per_round_orders_rounds_before_environments(envs):
    tasks = build_task_queue(envs(2), _routines("a", "b", "c"), "per_round")

    assert [(task.environment.id, task.routines[0].name, task.round) for task in tasks] == [
        ("env-1", "a", 1),
        ("env-2", "a", 1),
        ("env-1", "b", 2),
        ("env-2", "b", 2),
        ("env-1", "c", 3),
        ("env-2", "c", 3),
    ]
    assert [task.index for task in tasks] == [1, 2, 3, 4, 5, 6]
    assert {task.total for task in tasks} == {6}
    assert tasks[2].id == "3:env-1:r2"


def test_duplicate_environments_get_distinct_task_ids():
    env = Environment(id="same")
    tasks = build_task_queue([env, env], _routines("a"))
    assert len({task.id for task in tasks}) == 2


def test_pending_routines_start_as_a_copy(envs):
    task = build_task_queue(envs(1), _routines("a", "b"))[0]
    task.pending_routines.pop()
    assert len(task.routines) == 2


@pytest.mark.parametrize("env_count, routine_names", [(0, ("a",)), (2, ())])
def test_empty_inputs_are_rejected(envs, env_count, routine_names):
    with pytest.raises(QueueBuildError):
        build_task_queue(envs(env_count), _routines(*routine_names))


def test_unknown_mode_is_rejected(envs):
    with pytest.raises(ValueError):
        build_task_queue(envs(1), _routines("a"), "sometimes")
