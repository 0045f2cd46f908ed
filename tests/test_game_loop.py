import asyncio

import pytest

from conftest import RecordingManager, make_deck
from cardclash.routers.game_loop import RoundScheduler
from cardclash.schemas.game import GameStatus, WSEventType
from cardclash.schemas.lobby import LobbySettings

SCALE = 0.01


async def wait_for_event(manager, event_type, count=1, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while manager.types().count(event_type) < count:
        if loop.time() > deadline:
            raise AssertionError(f"{event_type} not seen, got {manager.types()}")
        await asyncio.sleep(0.001)


@pytest.fixture
def scheduler(directory, engine, manager):
    return RoundScheduler(
        directory, engine, manager,
        countdown_seconds=2, results_seconds=1, time_scale=SCALE
    )


def prepare(engine, lobby, cards, **settings):
    lobby.flashcards = make_deck(cards)
    lobby.settings = LobbySettings(**settings)
    assert engine.start_game(lobby.leader) is lobby


@pytest.mark.asyncio
async def test_full_game_runs_every_card(scheduler, engine, manager, two_player_lobby):
    prepare(engine, two_player_lobby, 2)
    task = scheduler.start(two_player_lobby.code)
    await asyncio.wait_for(task, timeout=2)

    types = manager.types()
    assert manager.payloads(WSEventType.START_COUNTDOWN) == [{"seconds": 2}, {"seconds": 1}]
    assert types.count(WSEventType.NEW_FLASHCARD) == 2
    assert types.count(WSEventType.END_FLASHCARD) == 2
    assert types.index(WSEventType.START_COUNTDOWN) < types.index(WSEventType.NEW_FLASHCARD)
    assert [p["question"] for p in manager.payloads(WSEventType.NEW_FLASHCARD)] == ["q0", "q1"]
    assert manager.payloads(WSEventType.LOBBY_UPDATED)[-1]["lobby"]["status"] == "finished"
    assert two_player_lobby.status == GameStatus.FINISHED
    assert not scheduler.is_running(two_player_lobby.code)


@pytest.mark.asyncio
async def test_round_results_include_answers(scheduler, engine, manager, two_player_lobby):
    prepare(engine, two_player_lobby, 1)
    task = scheduler.start(two_player_lobby.code)

    await wait_for_event(manager, WSEventType.NEW_FLASHCARD)
    engine.submit_answer("p2", "a0")
    engine.submit_answer("p1", "wrong")
    await asyncio.wait_for(task, timeout=2)

    results = manager.payloads(WSEventType.END_FLASHCARD)[0]["results"]
    assert results["answer"] == "a0"
    assert [r["player"] for r in results["fastest_players"]] == ["Ben"]
    assert results["wrong_answers"][0]["answers"] == ["wrong"]
    assert [p.wins for p in two_player_lobby.players] == [0, 1]


@pytest.mark.asyncio
async def test_answers_after_round_closes_are_ignored(scheduler, engine, manager, two_player_lobby):
    prepare(engine, two_player_lobby, 1)
    scheduler.results_seconds = 50
    task = scheduler.start(two_player_lobby.code)

    await wait_for_event(manager, WSEventType.END_FLASHCARD)
    assert engine.submit_answer("p1", "a0") is None
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_everyone_submitting_ends_round_early(directory, engine, manager, two_player_lobby):
    scheduler = RoundScheduler(
        directory, engine, manager, countdown_seconds=1, results_seconds=1, time_scale=0.1
    )
    prepare(engine, two_player_lobby, 1, multiple_choice=True, round_time=20)
    task = scheduler.start(two_player_lobby.code)

    await wait_for_event(manager, WSEventType.NEW_FLASHCARD)
    engine.submit_answer("p1", "a0")
    scheduler.notify_submission(two_player_lobby.code)
    engine.submit_answer("p2", "nope")
    scheduler.notify_submission(two_player_lobby.code)

    # The full answer window would be two seconds.
    await wait_for_event(manager, WSEventType.END_FLASHCARD, timeout=0.5)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_points_to_win_stops_early(scheduler, engine, manager, two_player_lobby):
    prepare(engine, two_player_lobby, 5, points_to_win=10)
    task = scheduler.start(two_player_lobby.code)

    await wait_for_event(manager, WSEventType.NEW_FLASHCARD)
    two_player_lobby.players[0].score = 10
    await asyncio.wait_for(task, timeout=2)

    assert manager.types().count(WSEventType.END_FLASHCARD) == 1
    assert two_player_lobby.players[0].wins == 1


@pytest.mark.asyncio
async def test_destroying_lobby_cancels_driver(scheduler, engine, manager, directory, two_player_lobby):
    prepare(engine, two_player_lobby, 3)
    task = scheduler.start(two_player_lobby.code)

    await wait_for_event(manager, WSEventType.NEW_FLASHCARD)
    directory.destroy_lobby(two_player_lobby.code)

    with pytest.raises(asyncio.CancelledError):
        await task
    assert WSEventType.END_FLASHCARD not in manager.types()


@pytest.mark.asyncio
async def test_end_early_finishes_game(scheduler, engine, manager, directory, two_player_lobby):
    prepare(engine, two_player_lobby, 3)
    task = scheduler.start(two_player_lobby.code)
    assert scheduler.start(two_player_lobby.code) is None

    await wait_for_event(manager, WSEventType.NEW_FLASHCARD)
    engine.submit_answer("p1", "a0")
    await scheduler.end_early(two_player_lobby.code)

    with pytest.raises(asyncio.CancelledError):
        await task
    assert two_player_lobby.status == GameStatus.FINISHED
    assert two_player_lobby.players[0].wins == 1
    assert directory.get_game_state(two_player_lobby.code) is None
    assert not scheduler.is_running(two_player_lobby.code)


@pytest.mark.asyncio
async def test_stale_driver_leaves_restarted_game_alone(directory, engine, manager, two_player_lobby):
    scheduler = RoundScheduler(
        directory, engine, manager, countdown_seconds=20, results_seconds=1, time_scale=SCALE
    )
    code = two_player_lobby.code
    prepare(engine, two_player_lobby, 3)
    old = scheduler.start(code)
    await wait_for_event(manager, WSEventType.NEW_FLASHCARD)

    # Game ended from inside the driver: handle cleared, task left running.
    directory.clear_round_task(code)
    engine.finish_game(code)
    assert engine.start_game("p1") is two_player_lobby
    new = scheduler.start(code)
    assert new is not None

    await asyncio.wait_for(old, timeout=2)
    assert WSEventType.END_FLASHCARD not in manager.types()
    assert two_player_lobby.status == GameStatus.STARTING
    assert not new.done()

    new.cancel()
    with pytest.raises(asyncio.CancelledError):
        await new


class OrderRecordingManager(RecordingManager):
    def __init__(self, directory):
        super().__init__()
        self.directory = directory
        self.order_at_countdown = None

    async def broadcast_to_lobby(self, code, event, exclude=None):
        if event.type == WSEventType.START_COUNTDOWN and self.order_at_countdown is None:
            game_state = self.directory.get_game_state(code)
            self.order_at_countdown = [card.question for card in game_state.flashcards]
        await super().broadcast_to_lobby(code, event, exclude)


@pytest.mark.asyncio
async def test_deck_is_shuffled_before_countdown(directory, engine, two_player_lobby):
    manager = OrderRecordingManager(directory)
    scheduler = RoundScheduler(
        directory, engine, manager, countdown_seconds=1, results_seconds=1, time_scale=SCALE
    )
    prepare(engine, two_player_lobby, 20, shuffle=True)
    task = scheduler.start(two_player_lobby.code)

    await wait_for_event(manager, WSEventType.NEW_FLASHCARD)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    original = [f"q{i}" for i in range(20)]
    assert manager.order_at_countdown != original
    assert sorted(manager.order_at_countdown) == sorted(original)
    first = manager.payloads(WSEventType.NEW_FLASHCARD)[0]["question"]
    assert first == manager.order_at_countdown[0]
