"""Tests for frame parsing, debouncing and slider re-targeting."""

import pytest

from conftest import process
from pulsedeej.session import Added, Handle
from pulsedeej.sliders import MAX_VALUE, NOISE_MARGIN, SliderEngine

CHROME_A = Handle("sink_input", 10)
CHROME_B = Handle("sink_input", 11)
SPOTIFY = Handle("sink_input", 13)


class RecordingDispatcher:

    def __init__(self):
        self.fired = []

    async def fire(self, slider):
        self.fired.append((slider.index, slider.value))


def bare_engine(directory, slider_count):
    return SliderEngine(slider_count, directory, RecordingDispatcher())


def values(engine):
    return [slider.value for slider in engine.sliders]


class TestHandleLine:

    @pytest.mark.asyncio
    async def test_full_frame_normalizes_every_slider(self, directory):
        engine = bare_engine(directory, 3)

        changed = engine.handle_line(b"0|512|1023")

        assert changed == [0, 1, 2]
        assert values(engine) == [0.0, 512 / MAX_VALUE, 1.0]
        await engine.wait_idle()
        assert sorted(i for i, _ in engine.dispatcher.fired) == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_short_frame_is_discarded(self, directory):
        engine = bare_engine(directory, 3)
        engine.handle_line(b"100|100|100")

        assert engine.handle_line(b"900|900") == []
        assert values(engine) == [100 / MAX_VALUE] * 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("line", [
        b"900|abc|900",
        b"900|900|1024",
        b"900|-5|900",
        b"900||900",
        b"900|+5|900",
        b"900|9.5|900",
    ])
    async def test_bad_field_leaves_every_slider_alone(self, directory, line):
        engine = bare_engine(directory, 3)
        engine.handle_line(b"100|100|100")

        assert engine.handle_line(line) == []
        assert values(engine) == [100 / MAX_VALUE] * 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", [b"9" * 5000, b"0" * 5000 + b"1", b"01024"])
    async def test_overlong_field_is_discarded(self, directory, field):
        engine = bare_engine(directory, 2)
        engine.handle_line(b"100|100")

        assert engine.handle_line(field + b"|900") == []
        assert values(engine) == [100 / MAX_VALUE] * 2

    @pytest.mark.asyncio
    async def test_leading_zeros_are_accepted(self, directory):
        engine = bare_engine(directory, 2)

        assert engine.handle_line(b"0000512|00") == [0, 1]
        assert values(engine) == [512 / MAX_VALUE, 0.0]
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_extra_trailing_fields_are_ignored(self, directory):
        engine = bare_engine(directory, 2)

        assert engine.handle_line(b"10|20|garbage|99999") == [0, 1]
        assert values(engine) == [10 / MAX_VALUE, 20 / MAX_VALUE]

    @pytest.mark.asyncio
    async def test_whitespace_and_str_input(self, directory):
        engine = bare_engine(directory, 2)

        assert engine.handle_line(" 1023 | 0 \r") == [0, 1]
        assert values(engine) == [1.0, 0.0]

    @pytest.mark.asyncio
    async def test_small_moves_are_suppressed(self, directory):
        engine = bare_engine(directory, 1)
        engine.handle_line(b"500")
        await engine.wait_idle()
        engine.dispatcher.fired.clear()

        assert engine.handle_line(b"503") == []
        await engine.wait_idle()

        assert engine.dispatcher.fired == []
        assert engine.sliders[0].value == 500 / MAX_VALUE

    @pytest.mark.asyncio
    async def test_moves_past_the_margin_are_applied(self, directory):
        engine = bare_engine(directory, 1)
        engine.handle_line(b"500")

        assert 10 / MAX_VALUE >= NOISE_MARGIN
        assert engine.handle_line(b"510") == [0]
        assert engine.sliders[0].value == 510 / MAX_VALUE

    @pytest.mark.asyncio
    async def test_only_changed_sliders_dispatch(self, directory):
        engine = bare_engine(directory, 3)
        engine.handle_line(b"100|100|100")
        await engine.wait_idle()
        engine.dispatcher.fired.clear()

        assert engine.handle_line(b"101|400|100") == [1]
        await engine.wait_idle()

        assert engine.dispatcher.fired == [(1, 400 / MAX_VALUE)]

    @pytest.mark.asyncio
    async def test_first_reading_always_counts(self, directory):
        engine = bare_engine(directory, 1)

        assert engine.handle_line(b"0") == [0]
        assert engine.sliders[0].value == 0.0


class TestFromConfig:

    @pytest.mark.asyncio
    async def test_mapping_is_positional(self, directory):
        engine = bare_engine(directory, 3)

        await engine.from_config([["chrome", ""], ["spotify", "vlc"], ["x"], ["ignored"]])

        assert [s.targets for s in engine.sliders] == [("chrome",), ("spotify", "vlc"), ("x",)]

    @pytest.mark.asyncio
    async def test_short_mapping_clears_trailing_sliders(self, directory):
        engine = bare_engine(directory, 3)
        await engine.from_config([["a"], ["b"], ["c"]])

        await engine.from_config([["a"]])

        assert [s.targets for s in engine.sliders] == [("a",), (), ()]

    @pytest.mark.asyncio
    async def test_refreshes_sessions_and_updates_unmapped(self, backend, directory):
        engine = bare_engine(directory, 2)

        await engine.from_config([["chrome"], ["deej.unmapped"]])

        assert backend.list_calls == 1
        assert {s.key for s in directory.resolve("deej.unmapped")} == {"discord", "spotify"}

    @pytest.mark.asyncio
    async def test_resyncs_sliders_that_have_a_reading(self, directory):
        engine = bare_engine(directory, 2)
        await engine.from_config([["chrome"], ["spotify"]])
        engine.handle_line(b"300|0")
        await engine.wait_idle()
        engine.dispatcher.fired.clear()

        await engine.from_config([["spotify"], ["chrome"]])
        await engine.wait_idle()

        assert sorted(engine.dispatcher.fired) == [(0, 300 / MAX_VALUE), (1, 0.0)]

    @pytest.mark.asyncio
    async def test_sliders_without_reading_are_not_fired(self, directory):
        engine = bare_engine(directory, 2)

        await engine.from_config([["chrome"], ["spotify"]])
        await engine.wait_idle()

        assert engine.dispatcher.fired == []


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_line_sets_volume_on_every_matching_session(self, backend, make_engine):
        engine = make_engine(1)
        await engine.from_config([["chrome"]])
        engine.sliders[0].value = 0.0

        engine.handle_line(b"512")
        await engine.wait_idle()

        expected = 512 / MAX_VALUE
        assert backend.volumes_set_for(CHROME_A) == [expected]
        assert backend.volumes_set_for(CHROME_B) == [expected]
        assert backend.volumes_set_for(SPOTIFY) == []

    @pytest.mark.asyncio
    async def test_second_small_move_does_not_reach_backend(self, backend, make_engine):
        engine = make_engine(1)
        await engine.from_config([["spotify"]])

        engine.handle_line(b"500")
        await engine.wait_idle()
        engine.handle_line(b"503")
        await engine.wait_idle()

        assert backend.volumes_set_for(SPOTIFY) == [500 / MAX_VALUE]

    @pytest.mark.asyncio
    async def test_dispatch_uses_value_current_at_fire_time(self, backend, make_engine):
        engine = make_engine(1)
        await engine.from_config([["spotify"]])

        # both lines land before any dispatch task gets to run
        engine.handle_line(b"100")
        engine.handle_line(b"900")
        await engine.wait_idle()

        assert backend.volumes[SPOTIFY] == 900 / MAX_VALUE
        assert set(backend.volumes_set_for(SPOTIFY)) == {900 / MAX_VALUE}

    @pytest.mark.asyncio
    async def test_new_session_receives_current_value(self, backend, directory, make_engine):
        engine = make_engine(1)
        await engine.from_config([["vlc"]])
        engine.handle_line(b"200")
        await engine.wait_idle()

        vlc = process("vlc", 20)
        backend.add(vlc)
        await directory.on_backend_event(Added(vlc.handle))
        await engine.wait_idle()

        assert backend.volumes_set_for(vlc.handle) == [200 / MAX_VALUE]
