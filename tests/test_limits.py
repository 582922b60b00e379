import threading
from datetime import timedelta

import pytest
from sqlalchemy import insert
from sqlalchemy.orm import sessionmaker

import limits
from auth import get_or_create_user
from database import create_db_engine, init_db
from errors import LimitExceeded, NotFound, PremiumRequired, UpstreamUnavailable, ValidationError
from models import Habit, HabitLog, SubscriptionStatus


def make_habits(db, user, clock, count):
    for i in range(count):
        limits.create_habit(db, user.id, {"name": f"Habit {i}"}, clock)


def log_count(db, habit_id):
    return db.query(HabitLog).filter(HabitLog.habit_id == habit_id).count()


# ─── limit ───

def test_free_user_refused_fourth_habit(db, user, clock):
    make_habits(db, user, clock, 3)

    with pytest.raises(LimitExceeded) as exc:
        limits.create_habit(db, user.id, {"name": "Fourth"}, clock)

    assert exc.value.extra == {"limit": 3, "current": 3}
    assert exc.value.to_dict()["upgradeRequired"] is True
    assert db.query(Habit).filter(Habit.user_id == user.id).count() == 3


def test_concurrent_creates_cannot_pass_the_limit(tmp_path, clock):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'race.db'}")
    init_db(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False)

    setup = Session()
    owner = get_or_create_user(setup, 111)
    owner_id = owner.id
    make_habits(setup, owner, clock, 2)
    setup.close()

    barrier = threading.Barrier(2)
    outcomes = []

    def create(name):
        session = Session()
        try:
            barrier.wait()
            limits.create_habit(session, owner_id, {"name": name}, clock)
            outcomes.append("created")
        except (LimitExceeded, UpstreamUnavailable) as e:
            outcomes.append(type(e).__name__)
        finally:
            session.close()

    threads = [threading.Thread(target=create, args=(name,)) for name in ("Third", "Also third")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    check = Session()
    try:
        assert check.query(Habit).filter(Habit.user_id == owner_id).count() == 3
    finally:
        check.close()
        engine.dispose()
    assert len(outcomes) == 2
    assert outcomes.count("created") == 1


def test_premium_user_never_refused(db, user, clock, make_premium):
    make_premium(user)
    make_habits(db, user, clock, 10)
    assert db.query(Habit).filter(Habit.user_id == user.id).count() == 10


def test_limit_checked_before_premium_fields(db, user, clock):
    make_habits(db, user, clock, 3)
    with pytest.raises(LimitExceeded):
        limits.create_habit(db, user.id, {"name": "x", "reminder_enabled": True,
                                          "reminder_time": "09:00"}, clock)


def test_free_user_cannot_enable_reminders(db, user, clock):
    with pytest.raises(PremiumRequired):
        limits.create_habit(db, user.id, {"name": "Read", "reminder_enabled": True,
                                          "reminder_time": "09:00"}, clock)
    assert db.query(Habit).count() == 0


def test_free_user_premium_fields_are_dropped(db, user, clock):
    habit = limits.create_habit(db, user.id, {"name": "Read", "reminder_time": "09:00",
                                              "goal_target": 10}, clock)
    assert habit.reminder_time is None
    assert habit.goal_target is None


def test_premium_user_keeps_reminder(db, user, clock, make_premium):
    make_premium(user)
    habit = limits.create_habit(db, user.id, {"name": "Read", "reminder_enabled": True,
                                              "reminder_time": "09:00"}, clock)
    assert habit.reminder_enabled is True
    assert habit.reminder_time == "09:00"


def test_lapsed_premium_counts_as_free_and_is_demoted(db, user, clock, make_premium, now):
    make_premium(user, days_left=1)
    make_habits(db, user, clock, 3)
    now.advance(days=2)

    with pytest.raises(LimitExceeded):
        limits.create_habit(db, user.id, {"name": "Fourth"}, clock)

    # the refused request is rolled back; a successful read-write demotes it
    limits.update_habit(db, user.id, db.query(Habit).first().id, {"name": "Renamed"}, clock)
    db.refresh(user)
    assert user.subscription_status == SubscriptionStatus.expired.value


def test_blank_name_rejected(db, user, clock):
    with pytest.raises(ValidationError):
        limits.create_habit(db, user.id, {"name": "   "}, clock)


# ─── update / delete ───

def test_update_strips_premium_fields_after_expiry(db, user, clock, make_premium, now):
    make_premium(user, days_left=1)
    habit = limits.create_habit(db, user.id, {"name": "Run", "reminder_enabled": True,
                                              "reminder_time": "07:30", "goal_enabled": True,
                                              "goal_type": "streak", "goal_target": 7}, clock)
    now.advance(days=3)

    updated = limits.update_habit(db, user.id, habit.id, {"description": "5 km"}, clock)

    assert updated.description == "5 km"
    assert updated.reminder_enabled is False
    assert updated.reminder_time is None
    assert updated.goal_enabled is False


def test_update_other_users_habit_is_not_found(db, user, clock):
    from auth import get_or_create_user

    other = get_or_create_user(db, 222)
    habit = limits.create_habit(db, other.id, {"name": "Theirs"}, clock)
    with pytest.raises(NotFound):
        limits.update_habit(db, user.id, habit.id, {"name": "Mine"}, clock)


def test_delete_removes_history(db, user, clock):
    habit = limits.create_habit(db, user.id, {"name": "Run"}, clock)
    limits.toggle_completion(db, habit.id, user.id, clock)
    habit_id = habit.id

    limits.delete_habit(db, user.id, habit_id)

    assert db.get(Habit, habit_id) is None
    assert log_count(db, habit_id) == 0


# ─── toggle ───

def test_toggle_completes_and_uncompletes(db, user, clock):
    habit = limits.create_habit(db, user.id, {"name": "Run"}, clock)
    before = limits.habit_streak(db, habit.id, clock)

    assert limits.toggle_completion(db, habit.id, user.id, clock) == {"completed": True}
    assert limits.habit_streak(db, habit.id, clock) == before + 1

    assert limits.toggle_completion(db, habit.id, user.id, clock) == {"completed": False}
    assert limits.habit_streak(db, habit.id, clock) == before
    assert log_count(db, habit.id) == 0


def test_toggle_in_new_period_creates_new_log(db, user, clock, now):
    habit = limits.create_habit(db, user.id, {"name": "Run"}, clock)
    limits.toggle_completion(db, habit.id, user.id, clock)
    now.advance(days=1)

    assert limits.toggle_completion(db, habit.id, user.id, clock) == {"completed": True}
    assert log_count(db, habit.id) == 2
    assert limits.habit_streak(db, habit.id, clock) == 2


def test_concurrent_insert_never_leaves_two_logs(db, user, clock, monkeypatch):
    habit = limits.create_habit(db, user.id, {"name": "Run"}, clock)
    period = clock.current_period_start()
    real_find = limits.find_period_log
    calls = []

    def racing_find(session, habit_id, p):
        calls.append(p)
        if len(calls) == 1:
            # another request inserts between our read and our insert
            session.execute(insert(HabitLog).values(habit_id=habit_id, period_start=p))
            return None
        return real_find(session, habit_id, p)

    monkeypatch.setattr(limits, "find_period_log", racing_find)

    result = limits.toggle_completion(db, habit.id, user.id, clock)

    assert result == {"completed": False}
    assert calls == [period, period]
    assert log_count(db, habit.id) == 0


def test_toggle_unknown_habit(db, user, clock):
    with pytest.raises(NotFound):
        limits.toggle_completion(db, 999, user.id, clock)


# ─── reads ───

def test_list_habits_newest_first_with_streaks(db, user, clock, now):
    first = limits.create_habit(db, user.id, {"name": "First"}, clock)
    now.advance(minutes=1)
    limits.create_habit(db, user.id, {"name": "Second"}, clock)
    limits.toggle_completion(db, first.id, user.id, clock)

    habits = limits.list_habits(db, user.id, clock)

    assert [h["name"] for h in habits] == ["Second", "First"]
    assert habits[1]["streak"] == 1
    assert habits[1]["is_completed_today"] is True
    assert habits[0]["streak"] == 0


def test_habit_stats(db, user, clock, now):
    habit = limits.create_habit(db, user.id, {"name": "Run"}, clock)
    for _ in range(3):
        limits.toggle_completion(db, habit.id, user.id, clock)
        now.advance(days=1)
    now.advance(days=-1)

    stats = limits.habit_stats(db, user.id, habit.id, clock)

    assert stats["streak"] == 3
    assert len(stats["last7_days"]) == 7
    assert [d["completed"] for d in stats["last7_days"]][-3:] == [True, True, True]
    assert stats["last7_days"][-1]["date"] == (clock.now() - timedelta(hours=12)).date().isoformat()
