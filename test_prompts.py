from storybook.models import StorySegment, StorySession
from storybook.prompts import (
    FINAL, INITIAL, INTERMEDIATE, PENULTIMATE, OMITTED_MARKER,
    CONCLUSION_MAX_TOKENS, CONTINUATION_MAX_TOKENS,
    build_text_request, select_template,
)


def _session(texts=()):
    return StorySession(
        id="s1",
        style="fantasy",
        character="robot",
        setting="forest",
        theme="friendship",
        visual_style_prompt="cartoon",
        step_count=len(texts) + 1,
        segments=[StorySegment(text=t, image_url="data:,") for t in texts],
    )


def test_template_by_step_position():
    assert [select_template(step, 5) for step in range(1, 6)] == [
        INITIAL, INTERMEDIATE, INTERMEDIATE, PENULTIMATE, FINAL,
    ]


def test_initial_wins_over_penultimate_for_two_step_story():
    assert select_template(1, 2) == INITIAL
    assert select_template(2, 2) == FINAL


def test_initial_prompt_uses_descriptors():
    req = build_text_request(_session(), 1, 5, None)
    assert req.template == INITIAL
    for value in ("fantasy", "robot", "forest", "friendship"):
        assert value in req.prompt
    assert '"choices"' in req.prompt
    assert req.max_tokens == CONTINUATION_MAX_TOKENS
    assert req.json_output is True


def test_intermediate_prompt_has_story_so_far_and_choice_in_order():
    session = _session(["First bit.", "Second bit."])
    req = build_text_request(session, 3, 5, "Climb a tree")
    assert req.template == INTERMEDIATE
    assert req.prompt.index("First bit.") < req.prompt.index("Second bit.") < req.prompt.index("Climb a tree")
    assert "robot" in req.prompt


def test_penultimate_prompt_steers_toward_ending():
    req = build_text_request(_session(["a", "b", "c"]), 4, 5, "Wait")
    assert req.template == PENULTIMATE
    assert "end in the next part" in req.prompt
    assert '"question"' in req.prompt


def test_final_prompt_asks_for_story_only():
    req = build_text_request(_session(["a", "b", "c", "d"]), 5, 5, "Go home")
    assert req.template == FINAL
    assert 'ONLY the key "story"' in req.prompt
    assert '"choices"' not in req.prompt
    assert req.max_tokens == CONCLUSION_MAX_TOKENS


def test_context_keeps_only_latest_segments():
    session = _session(["one", "two", "three", "four", "five", "six"])
    req = build_text_request(session, 7, 10, "Next", max_segments=2)
    assert OMITTED_MARKER in req.prompt
    assert "five" in req.prompt and "six" in req.prompt
    assert "\none\n" not in req.prompt and "four" not in req.prompt


def test_braces_in_story_text_do_not_break_formatting():
    req = build_text_request(_session(["The robot drew {a map}."]), 2, 5, "Use {it}")
    assert "{a map}" in req.prompt
    assert "Use {it}" in req.prompt
