"""Tests for the Validator.

Tests cover:
- One validator per object
- Instant updates (update_errors) and error queries
- Merging of nested validators, including list and hoisted children
- Sync handlers: initial run, debounced re-runs, disposal, failures
- Async handlers: expression change detection, stale result gating,
  disposal and reset during a run, failures
- make_validatable shorthand
"""

import asyncio
import pytest

from formguard.config import HandlerOptions
from formguard.key_path import SELF
from formguard.nested import NestedField
from formguard.types import EventType
from formguard.validator import Validator, make_validatable
from formguard.watcher import Watcher


async def settle(rounds: int = 5) -> None:
    """Let ready tasks and callbacks run without letting timers fire."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class Form:
    def __init__(self):
        self.name = ""
        self.email = ""


class Address:
    def __init__(self):
        self.city = ""


class Friend:
    def __init__(self, name=""):
        self.name = name


class Base:
    pass


class Person:
    def __init__(self):
        self.name = ""
        self.address = Address()
        self.friends = [Friend("a"), Friend("b")]
        self.base = None

    def nested_fields(self):
        return [
            NestedField("address", self.address),
            NestedField("friends", self.friends),
            NestedField("base", self.base, hoist=True),
        ]


class Line:
    pass


class Sheet:
    def __init__(self):
        self.lines = [Line(), Line()]

    def nested_fields(self):
        return [NestedField("lines", self.lines, hoist=True)]


class Report:
    def __init__(self):
        self.sheet = Sheet()

    def nested_fields(self):
        return [NestedField("sheet", self.sheet)]


def invalidate(*pairs):
    """Build an instant handler invalidating (key, message) pairs."""
    def handler(builder):
        for key, message in pairs:
            if key is SELF:
                builder.invalidate_self(message)
            else:
                builder.invalidate(key, message)
    return handler


def key_paths_of(found):
    return sorted(str(key_path) for key_path, _ in found)


class TestValidatorRegistry:
    """Test Validator.get / get_safe."""

    def test_one_validator_per_object(self):
        """Should return the same validator for the same object."""
        form = Form()
        assert Validator.get(form) is Validator.get(form)
        assert Validator.get(form) is not Validator.get(Form())
        assert Validator.get(form).id.startswith("val_")

    def test_get_rejects_non_objects(self):
        """Should raise TypeError for untrackable targets."""
        for target in (None, 1, "text"):
            with pytest.raises(TypeError):
                Validator.get(target)

    def test_get_safe_returns_none(self):
        """Should return None for untrackable targets."""
        assert Validator.get_safe(None) is None
        assert Validator.get_safe(3.14) is None

    def test_direct_construction_rejected(self):
        """Should refuse direct instantiation."""
        with pytest.raises(TypeError, match="Validator.get"):
            Validator(object(), Form())

    def test_new_validator_is_valid(self):
        """Should start valid and idle."""
        validator = Validator.get(Form())
        assert validator.is_valid
        assert not validator.is_validating
        assert validator.first_error_message is None


class TestUpdateErrors:
    """Test instant error updates."""

    def test_stores_errors(self):
        """Should store the errors reported by the handler."""
        validator = Validator.get(Form())
        validator.update_errors("server", invalidate(("name", "Name is taken")))

        assert not validator.is_valid
        assert validator.get_error_messages("name") == {"Name is taken"}

    def test_same_key_replaces_bucket(self):
        """Should replace the errors of the same key."""
        validator = Validator.get(Form())
        validator.update_errors("server", invalidate(("name", "first")))
        validator.update_errors("server", invalidate(("email", "second")))

        assert validator.get_error_messages("name") == set()
        assert validator.get_error_messages("email") == {"second"}

    def test_empty_result_removes_bucket(self):
        """Should remove the bucket when no error is reported."""
        validator = Validator.get(Form())
        validator.update_errors("server", invalidate(("name", "x")))
        validator.update_errors("server", invalidate())
        assert validator.is_valid

    def test_buckets_are_merged(self):
        """Should merge errors of different keys."""
        validator = Validator.get(Form())
        validator.update_errors("a", invalidate(("name", "from a")))
        validator.update_errors("b", invalidate(("name", "from b")))
        assert validator.get_error_messages("name") == {"from a", "from b"}

    def test_dispose_removes_bucket(self):
        """Should remove only the disposed bucket."""
        validator = Validator.get(Form())
        dispose = validator.update_errors("a", invalidate(("name", "from a")))
        validator.update_errors("b", invalidate(("email", "from b")))

        dispose()

        assert validator.invalid_keys == {"email"}

    def test_handler_exception_propagates(self):
        """Should propagate exceptions of the explicit write path."""
        validator = Validator.get(Form())

        def failing(builder):
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            validator.update_errors("server", failing)
        assert validator.is_valid


class TestQueries:
    """Test error queries on a single validator."""

    @pytest.fixture
    def form(self):
        return Form()

    @pytest.fixture
    def validator(self, form):
        validator = Validator.get(form)
        validator.update_errors("errors", invalidate(
            ("name", "Name is required"),
            ("address.city", "City is required"),
            ("address.zip", "Zip is invalid"),
            (SELF, "Form is invalid"),
        ))
        return validator

    def test_exact_query(self, validator):
        """Should return errors at exactly the key path."""
        assert validator.get_error_messages("address.city") == {"City is required"}
        assert validator.get_error_messages("address") == set()

    def test_prefix_query(self, validator):
        """Should include errors at descendant key paths."""
        assert validator.get_error_messages("address", prefix_match=True) == {
            "City is required",
            "Zip is invalid",
        }

    def test_self_query_returns_own_errors(self, validator):
        """Should return every own error for SELF."""
        assert len(validator.get_error_messages(SELF)) == 4
        assert validator.get_error_messages() == validator.get_error_messages(SELF, prefix_match=True)

    def test_has_errors(self, validator):
        """Should report presence of errors."""
        assert validator.has_errors("name")
        assert not validator.has_errors("email")
        assert validator.has_errors("address", prefix_match=True)
        assert not validator.has_errors("address")

    def test_invalid_keys(self, validator):
        """Should report the first segments of invalid key paths."""
        assert validator.invalid_keys == {"name", "address", SELF}
        assert validator.invalid_key_count == 3

    def test_invalid_key_paths(self, validator):
        """Should report every invalid key path."""
        assert validator.invalid_key_paths == {"name", "address.city", "address.zip", SELF}
        assert validator.invalid_key_path_count == 4

    def test_find_errors_yields_key_path_and_error(self, validator):
        """Should yield (key path, error) pairs."""
        found = list(validator.find_errors("address", prefix_match=True))
        assert key_paths_of(found) == ["address.city", "address.zip"]
        assert all(key_path == error.key_path for key_path, error in found)

    def test_first_error_message(self, validator):
        """Should return one of the error messages."""
        assert validator.first_error_message in validator.get_error_messages(SELF)


class TestNestedMerge:
    """Test merging of nested validators."""

    @pytest.fixture
    def person(self):
        return Person()

    def test_nested_errors_make_parent_invalid(self, person):
        """Should consider the parent invalid when a child is invalid."""
        parent = Validator.get(person)
        Validator.get(person.address).update_errors("v", invalidate(("city", "City is required")))

        assert not parent.is_valid
        assert parent.invalid_key_paths == {"address.city"}
        assert parent.invalid_keys == frozenset()

    def test_nested_errors_by_key_path(self, person):
        """Should route key path queries to the child at the nearest ancestor."""
        parent = Validator.get(person)
        Validator.get(person.address).update_errors("v", invalidate(("city", "City is required")))

        assert parent.get_error_messages("address.city") == {"City is required"}
        assert parent.get_error_messages("address.zip") == set()
        found = list(parent.find_errors("address.city"))
        assert key_paths_of(found) == ["address.city"]
        assert found[0][1].key_path == "city"

    def test_list_children(self, person):
        """Should attach list children under field.index."""
        parent = Validator.get(person)
        Validator.get(person.friends[1]).update_errors("v", invalidate(("name", "Unknown friend")))

        assert parent.invalid_key_paths == {"friends.1.name"}
        assert parent.get_error_messages("friends.1.name") == {"Unknown friend"}
        assert parent.get_error_messages("friends.0.name") == set()
        assert parent.get_error_messages("friends", prefix_match=True) == {"Unknown friend"}

    def test_parent_and_child_errors_distinguishable(self, person):
        """Should surface both a parent error at the field and the child's self error."""
        parent = Validator.get(person)
        parent.update_errors("v", invalidate(("address", "Address is required")))
        Validator.get(person.address).update_errors("v", invalidate((SELF, "Address is incomplete")))

        found = list(parent.find_errors("address"))

        assert {error.message for _, error in found} == {"Address is required", "Address is incomplete"}
        assert all(key_path == "address" for key_path, _ in found)
        by_origin = {error.key_path: error.message for _, error in found}
        assert by_origin == {"address": "Address is required", SELF: "Address is incomplete"}

    def test_exact_self_query_excludes_attached_children(self, person):
        """Should not include children attached under a field in exact SELF queries."""
        parent = Validator.get(person)
        parent.update_errors("v", invalidate(("name", "Name is required")))
        Validator.get(person.address).update_errors("v", invalidate(("city", "City is required")))

        assert parent.get_error_messages(SELF) == {"Name is required"}
        assert parent.get_error_messages(SELF, prefix_match=True) == {
            "Name is required",
            "City is required",
        }

    def test_prefix_query_includes_child_errors(self, person):
        """Should include all errors of children attached under the prefix."""
        parent = Validator.get(person)
        parent.update_errors("v", invalidate(("address", "Address is required")))
        address_validator = Validator.get(person.address)
        address_validator.update_errors("v", invalidate(("city", "City is required"), (SELF, "Incomplete")))

        found = list(parent.find_errors("address", prefix_match=True))

        assert key_paths_of(found) == ["address", "address", "address.city"]

    def test_hoisted_child(self, person):
        """Should merge a hoisted child's errors at the parent's root."""
        person.base = Base()
        parent = Validator.get(person)
        Validator.get(person.base).update_errors("v", invalidate(
            ("name", "Base name is invalid"),
            (SELF, "Base is invalid"),
        ))

        assert parent.get_error_messages("name") == {"Base name is invalid"}
        assert parent.get_error_messages(SELF) == {"Base name is invalid", "Base is invalid"}
        assert parent.invalid_key_paths == {"name", SELF}

    def test_hoisted_list_items(self):
        """Should merge hoisted list items at the root, with their index only in prefix queries."""
        report = Report()
        sheet = Validator.get(report.sheet)
        Validator.get(report.sheet.lines[1]).update_errors("v", invalidate(
            ("amount", "Amount is required"),
            (SELF, "Line is empty"),
        ))

        assert sheet.get_error_messages(SELF) == {"Amount is required", "Line is empty"}
        assert {key_path for key_path, _ in sheet.find_errors(SELF)} == {"amount", SELF}
        assert sheet.get_error_messages("amount") == {"Amount is required"}
        assert sheet.get_error_messages("1.amount") == {"Amount is required"}
        assert sheet.get_error_messages("0.amount") == set()
        assert sheet.invalid_key_paths == {"1.amount", "1"}

        parent = Validator.get(report)
        assert {key_path for key_path, _ in parent.find_errors("sheet")} == {"sheet.amount", "sheet"}
        assert {key_path for key_path, _ in parent.find_errors(SELF, prefix_match=True)} == {
            "sheet.1.amount",
            "sheet.1",
        }

    def test_nearest_attachment_wins_over_hoisted(self, person):
        """Should not consult hoisted children for paths owned by an attached child."""
        person.base = Base()
        parent = Validator.get(person)
        Validator.get(person.base).update_errors("v", invalidate(("address.city", "From base")))
        Validator.get(person.address).update_errors("v", invalidate(("city", "From address")))

        assert parent.get_error_messages("address.city") == {"From address"}

    def test_nested_map(self, person):
        """Should expose nested validators by attachment key path."""
        parent = Validator.get(person)
        nested = parent.nested

        assert set(nested) == {"address", "friends.0", "friends.1"}
        assert nested["address"] is Validator.get(person.address)

    def test_structure_changes_are_reflected(self, person):
        """Should pick up children added after the validator was created."""
        parent = Validator.get(person)
        new_friend = Friend()
        Validator.get(new_friend).update_errors("v", invalidate(("name", "Name is required")))
        assert parent.is_valid

        person.friends.append(new_friend)

        assert parent.invalid_key_paths == {"friends.2.name"}

    def test_first_error_message_includes_nested(self, person):
        """Should find nested error messages."""
        parent = Validator.get(person)
        Validator.get(person.address).update_errors("v", invalidate(("city", "City is required")))
        assert parent.first_error_message == "City is required"


class TestSyncHandler:
    """Test sync handlers without a running event loop."""

    def test_initial_run(self):
        """Should run the handler right away."""
        form = Form()
        validator = Validator.get(form)

        def check(builder):
            if not form.name:
                builder.invalidate("name", "Name is required")

        validator.add_sync_handler(check)

        assert validator.get_error_messages("name") == {"Name is required"}

    def test_without_initial_run(self):
        """Should not run until the first change."""
        form = Form()
        validator = Validator.get(form)
        runs = []
        validator.add_sync_handler(lambda b: runs.append(1), initial_run=False)
        assert runs == []

        Watcher.get(form).mark_changed("name")
        assert runs == [1]

    def test_options(self):
        """Should take initial_run from HandlerOptions."""
        form = Form()
        runs = []
        Validator.get(form).add_sync_handler(lambda b: runs.append(1), options=HandlerOptions(initial_run=False))
        assert runs == []

    def test_change_reruns_without_loop(self):
        """Should re-run immediately when no event loop is running."""
        form = Form()
        validator = Validator.get(form)

        def check(builder):
            if not form.name:
                builder.invalidate("name", "Name is required")

        validator.add_sync_handler(check)
        form.name = "Alice"
        Watcher.get(form).mark_changed("name")

        assert validator.is_valid
        assert validator.reaction_state == 0

    def test_dispose(self):
        """Should remove errors and stop reacting."""
        form = Form()
        validator = Validator.get(form)
        runs = []

        def check(builder):
            runs.append(1)
            builder.invalidate("name", "Name is required")

        dispose = validator.add_sync_handler(check)
        dispose()
        Watcher.get(form).mark_changed("name")

        assert validator.is_valid
        assert runs == [1]
        dispose()

    def test_explicit_watch_sources(self):
        """Should re-run on changes of the given sources only."""
        form, other = Form(), Form()
        runs = []
        Validator.get(form).add_sync_handler(lambda b: runs.append(1), watch=[Watcher.get(other)])

        Watcher.get(form).mark_changed("name")
        assert runs == [1]
        Watcher.get(other).mark_changed("name")
        assert runs == [1, 1]

    def test_nested_change_reruns_parent_handler(self):
        """Should re-run a parent handler when a nested object reports a change."""
        person = Person()
        runs = []
        Validator.get(person).add_sync_handler(lambda b: runs.append(person.address.city))

        person.address.city = "Berlin"
        Watcher.get(person.address).mark_changed("city")

        assert runs == ["", "Berlin"]

    def test_custom_change_source(self):
        """Should accept any object with subscribe()."""
        class Source:
            def __init__(self):
                self.listeners = []

            def subscribe(self, listener):
                self.listeners.append(listener)
                return lambda: self.listeners.remove(listener)

        source = Source()
        runs = []
        dispose = Validator.get(Form()).add_sync_handler(lambda b: runs.append(1), watch=source)

        for listener in list(source.listeners):
            listener()
        assert runs == [1, 1]

        dispose()
        assert source.listeners == []

    def test_handler_failure(self, caplog):
        """Should log the failure, emit HANDLER_FAILED and store no errors."""
        form = Form()
        validator = Validator.get(form)
        failures = []
        validator.events.on(EventType.HANDLER_FAILED, failures.append)

        def check(builder):
            builder.invalidate("name", "partial")
            raise ValueError("boom")

        validator.add_sync_handler(check)

        assert validator.is_valid
        assert len(failures) == 1
        assert failures[0].payload["kind"] == "sync"
        assert "boom" in failures[0].payload["error"]
        assert "failed" in caplog.text

    def test_failure_clears_previous_errors(self):
        """Should drop errors of the previous run when a run fails."""
        form = Form()
        validator = Validator.get(form)

        def check(builder):
            if form.name == "crash":
                raise RuntimeError("crash")
            builder.invalidate("name", "Invalid")

        validator.add_sync_handler(check)
        assert not validator.is_valid

        form.name = "crash"
        Watcher.get(form).mark_changed("name")
        assert validator.is_valid

    def test_failure_does_not_affect_other_handlers(self):
        """Should keep the errors of other handlers."""
        form = Form()
        validator = Validator.get(form)
        validator.add_sync_handler(invalidate(("name", "Name is required")))

        def failing(builder):
            raise ValueError("boom")

        validator.add_sync_handler(failing)

        assert validator.get_error_messages("name") == {"Name is required"}


class TestSyncHandlerDebounce:
    """Test debounced re-runs with a running event loop."""

    @pytest.mark.asyncio
    async def test_changes_are_debounced(self):
        """Should re-run once after a burst of changes."""
        form = Form()
        validator = Validator.get(form)
        runs = []

        def check(builder):
            runs.append(form.name)
            if not form.name:
                builder.invalidate("name", "Name is required")

        validator.add_sync_handler(check, delay_ms=10)
        assert runs == [""]

        watcher = Watcher.get(form)
        for name in ("a", "ab", "abc"):
            form.name = name
            watcher.mark_changed("name")

        assert validator.reaction_state == 1
        assert validator.is_validating
        assert runs == [""]

        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        assert runs == ["", "abc"]
        assert validator.is_valid
        assert validator.reaction_state == 0

    @pytest.mark.asyncio
    async def test_change_during_delay_restarts_timer(self):
        """Should push the run out when a change arrives before the delay elapsed."""
        form = Form()
        validator = Validator.get(form)
        runs = []

        def check(builder):
            runs.append(form.name)

        validator.add_sync_handler(check, delay_ms=50)
        watcher = Watcher.get(form)

        form.name = "a"
        watcher.mark_changed("name")
        await asyncio.sleep(0.035)
        assert runs == [""]

        form.name = "ab"
        watcher.mark_changed("name")
        await asyncio.sleep(0.035)
        # past the first deadline, before the restarted one
        assert runs == [""]
        assert validator.reaction_state == 1

        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)
        assert runs == ["", "ab"]

    @pytest.mark.asyncio
    async def test_wait_for_validation_returns_when_due(self):
        """Should return once the pending reaction has run, without a fixed polling step."""
        form = Form()
        validator = Validator.get(form)
        runs = []
        validator.add_sync_handler(lambda b: runs.append(1), delay_ms=20, initial_run=False)

        loop = asyncio.get_running_loop()
        Watcher.get(form).mark_changed("name")
        started = loop.time()
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        assert runs == [1]
        assert not validator.is_validating
        assert loop.time() - started >= 0.015

    @pytest.mark.asyncio
    async def test_wait_for_validation_covers_reaction_then_job(self):
        """Should wait for a debounced reaction and the async run it starts."""
        form = Form()
        validator = Validator.get(form)
        gate = asyncio.Event()

        async def check(name, builder, signal):
            await gate.wait()
            builder.invalidate("name", f"{name} is taken")

        validator.add_async_handler(lambda: form.name, check, delay_ms=10, initial_run=False)
        form.name = "alice"
        Watcher.get(form).mark_changed("name")

        waiter = asyncio.ensure_future(validator.wait_for_validation())
        await asyncio.sleep(0.03)
        assert not waiter.done()
        assert validator.async_state == 1

        gate.set()
        await asyncio.wait_for(waiter, timeout=1)
        assert validator.get_error_messages("name") == {"alice is taken"}

    @pytest.mark.asyncio
    async def test_dispose_cancels_pending_reaction(self):
        """Should not run a pending reaction after disposal."""
        form = Form()
        validator = Validator.get(form)
        runs = []
        dispose = validator.add_sync_handler(lambda b: runs.append(1), delay_ms=10)

        Watcher.get(form).mark_changed("name")
        dispose()
        await asyncio.sleep(0.03)

        assert runs == [1]
        assert validator.reaction_state == 0

    @pytest.mark.asyncio
    async def test_reset_clears_errors_and_keeps_handlers(self):
        """Should clear errors, cancel reactions and react again later."""
        form = Form()
        validator = Validator.get(form)
        runs = []

        def check(builder):
            runs.append(1)
            builder.invalidate("name", "Name is required")

        validator.add_sync_handler(check, delay_ms=10)
        watcher = Watcher.get(form)
        watcher.mark_changed("name")

        validator.reset()
        assert validator.is_valid
        assert validator.reaction_state == 0

        await asyncio.sleep(0.03)
        assert runs == [1]
        assert validator.is_valid

        watcher.mark_changed("name")
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)
        assert runs == [1, 1]
        assert not validator.is_valid

    @pytest.mark.asyncio
    async def test_default_delay(self, monkeypatch):
        """Should use Validator.default_delay_ms when no delay is given."""
        monkeypatch.setattr(Validator, "default_delay_ms", 5)
        form = Form()
        validator = Validator.get(form)
        runs = []
        validator.add_sync_handler(lambda b: runs.append(1))

        Watcher.get(form).mark_changed("name")
        await asyncio.sleep(0.03)

        assert runs == [1, 1]


class TestAsyncHandler:
    """Test async handlers."""

    @pytest.mark.asyncio
    async def test_initial_run(self):
        """Should request the handler right away and store its result."""
        form = Form()
        form.name = "taken"
        validator = Validator.get(form)

        async def check(name, builder, signal):
            await asyncio.sleep(0.001)
            if name == "taken":
                builder.invalidate("name", "Name is taken")

        validator.add_async_handler(lambda: form.name, check, delay_ms=5)

        assert validator.async_state == 1
        assert validator.is_validating
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        assert validator.get_error_messages("name") == {"Name is taken"}
        assert validator.async_state == 0

    @pytest.mark.asyncio
    async def test_reruns_when_expression_changes(self):
        """Should run again only when the expression value changed."""
        form = Form()
        validator = Validator.get(form)
        calls = []

        async def check(name, builder, signal):
            calls.append(name)
            if name == "taken":
                builder.invalidate("name", "Name is taken")

        validator.add_async_handler(lambda: form.name, check, delay_ms=5)
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        watcher = Watcher.get(form)
        form.email = "a@example.com"
        watcher.mark_changed("email")
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)
        assert calls == [""]

        form.name = "taken"
        watcher.mark_changed("name")
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        assert calls == ["", "taken"]
        assert validator.get_error_messages("name") == {"Name is taken"}

    @pytest.mark.asyncio
    async def test_without_initial_run(self):
        """Should wait for the expression to change."""
        form = Form()
        validator = Validator.get(form)
        calls = []

        async def check(name, builder, signal):
            calls.append(name)

        validator.add_async_handler(lambda: form.name, check, initial_run=False, delay_ms=5)
        assert validator.async_state == 0

        form.name = "Alice"
        Watcher.get(form).mark_changed("name")
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        assert calls == ["Alice"]

    @pytest.mark.asyncio
    async def test_handler_receives_signal(self):
        """Should hand an unaborted signal to the handler."""
        form = Form()
        signals = []

        async def check(name, builder, signal):
            signals.append(signal)

        validator = Validator.get(form)
        validator.add_async_handler(lambda: form.name, check, delay_ms=5)
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        assert len(signals) == 1
        assert not signals[0].aborted

    @pytest.mark.asyncio
    async def test_dispose_during_run_discards_result(self):
        """Should abort the run and never commit its result."""
        form = Form()
        validator = Validator.get(form)
        gate = asyncio.Event()
        signals = []

        async def check(name, builder, signal):
            signals.append(signal)
            await gate.wait()
            builder.invalidate("name", "late")

        dispose = validator.add_async_handler(lambda: form.name, check, delay_ms=5)
        await settle()
        dispose()
        gate.set()
        await settle()

        assert signals[0].aborted
        assert validator.is_valid
        assert validator.async_state == 0

    @pytest.mark.asyncio
    async def test_reset_during_run_discards_result(self):
        """Should discard the running result and run again on the next change."""
        form = Form()
        validator = Validator.get(form)
        gate = asyncio.Event()
        calls = []

        async def check(name, builder, signal):
            calls.append(name)
            await gate.wait()
            builder.invalidate("name", "Name is taken")

        validator.add_async_handler(lambda: form.name, check, delay_ms=5)
        await settle()
        validator.reset()
        gate.set()
        await settle()
        assert validator.is_valid

        Watcher.get(form).mark_changed("name")
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        assert calls == ["", ""]
        assert validator.get_error_messages("name") == {"Name is taken"}

    @pytest.mark.asyncio
    async def test_reset_before_run_starts_discards_result(self):
        """Should gate a run on the generation it was dispatched with, not the one it starts under."""
        form = Form()
        validator = Validator.get(form)
        generations = []

        async def check(name, builder, signal):
            generations.append(signal.generation)
            builder.invalidate("name", "stale")

        validator.add_async_handler(lambda: form.name, check, delay_ms=5)
        validator.reset()
        await settle()

        assert generations == [1]
        assert validator.is_valid
        assert validator.async_state == 0

    def test_initial_run_requires_running_loop(self):
        """Should raise before registering anything when no event loop is running."""
        form = Form()
        validator = Validator.get(form)
        evaluations = []

        async def check(value, builder, signal):
            builder.invalidate("name", "never")

        with pytest.raises(RuntimeError, match="running event loop"):
            validator.add_async_handler(lambda: evaluations.append(form.name), check)

        Watcher.get(form).mark_changed("name")

        assert evaluations == []
        assert validator.async_state == 0
        assert validator.is_valid

    def test_without_initial_run_needs_no_loop(self):
        """Should register without a running event loop when not run right away."""
        form = Form()
        validator = Validator.get(form)

        async def check(value, builder, signal):
            pass

        dispose = validator.add_async_handler(lambda: form.name, check, initial_run=False)
        dispose()

        assert validator.async_state == 0

    @pytest.mark.asyncio
    async def test_latest_value_wins(self):
        """Should coalesce changes during a run into one run with the latest value."""
        form = Form()
        validator = Validator.get(form)
        calls = []

        async def check(name, builder, signal):
            calls.append(name)
            await asyncio.sleep(0.02)
            if not signal.aborted and name != "final":
                builder.invalidate("name", f"{name} is taken")

        validator.add_async_handler(lambda: form.name, check, delay_ms=1)
        await settle()

        watcher = Watcher.get(form)
        for name in ("x", "y", "final"):
            form.name = name
            watcher.mark_changed("name")
            await asyncio.sleep(0.003)

        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        assert calls[0] == ""
        assert calls[-1] == "final"
        assert validator.is_valid

    @pytest.mark.asyncio
    async def test_handler_failure(self):
        """Should emit HANDLER_FAILED and store no errors."""
        form = Form()
        validator = Validator.get(form)
        validator.update_errors("other", invalidate(("email", "Email is required")))
        failures = []
        validator.events.on(EventType.HANDLER_FAILED, failures.append)

        async def check(name, builder, signal):
            builder.invalidate("name", "partial")
            raise ValueError("boom")

        validator.add_async_handler(lambda: form.name, check, delay_ms=5)
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)

        assert len(failures) == 1
        assert failures[0].payload["kind"] == "async"
        assert validator.invalid_key_paths == {"email"}

    @pytest.mark.asyncio
    async def test_expression_failure(self):
        """Should report a failing expression as a handler failure."""
        form = Form()
        validator = Validator.get(form)
        failures = []
        validator.events.on(EventType.HANDLER_FAILED, failures.append)

        async def check(name, builder, signal):
            pass

        validator.add_async_handler(lambda: form.missing, check, delay_ms=5)

        assert len(failures) == 1
        assert "AttributeError" in failures[0].payload["error"]
        assert validator.async_state == 0

    @pytest.mark.asyncio
    async def test_handlers_run_concurrently(self):
        """Should run async handlers of one validator independently."""
        form = Form()
        validator = Validator.get(form)
        gate = asyncio.Event()

        async def slow(name, builder, signal):
            await gate.wait()
            builder.invalidate("name", "slow")

        async def fast(email, builder, signal):
            builder.invalidate("email", "fast")

        validator.add_async_handler(lambda: form.name, slow, delay_ms=5)
        validator.add_async_handler(lambda: form.email, fast, delay_ms=5)
        await settle()

        assert validator.async_state == 1
        assert validator.get_error_messages("email") == {"fast"}

        gate.set()
        await asyncio.wait_for(validator.wait_for_validation(), timeout=1)
        assert validator.invalid_key_paths == {"name", "email"}


class TestMakeValidatable:
    """Test the make_validatable shorthand."""

    def test_sync(self):
        """Should register a sync handler."""
        form = Form()
        dispose = make_validatable(form, invalidate(("name", "Name is required")))

        assert not Validator.get(form).is_valid
        dispose()
        assert Validator.get(form).is_valid

    @pytest.mark.asyncio
    async def test_async(self):
        """Should register an async handler."""
        form = Form()

        async def check(name, builder, signal):
            builder.invalidate("name", "Name is taken")

        make_validatable(form, lambda: form.name, check, delay_ms=5)
        await asyncio.wait_for(Validator.get(form).wait_for_validation(), timeout=1)

        assert Validator.get(form).get_error_messages("name") == {"Name is taken"}

    def test_invalid_arguments(self):
        """Should reject calls without handlers."""
        with pytest.raises(TypeError):
            make_validatable(Form(), "not a handler")
