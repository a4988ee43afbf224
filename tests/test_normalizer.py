import json

from services.lobby_monitor.normalizer import (
    CAPTION_MAX, GENERIC_CAPTION, ResponseNormalizer, split_sections,
)
from services.lobby_monitor.scenarios import default_scenario


def fenced(obj) -> str:
    return "Here is the analysis:\n```json\n" + json.dumps(obj, ensure_ascii=False) + "\n```"


def test_counting_json_keeps_every_count_and_backend_caption(lobby):
    reply = fenced({
        "total_persons": 5,
        "persons_near_doors": 2,
        "persons_at_reception": 1,
        "persons_in_other_areas": 2,
        "scene_description": '<span class="ai-caption">Busy morning at the front desk</span>\n\n'
                             "**👥 People & Activities:**\nFive visitors are checking in.",
    })
    result = ResponseNormalizer().normalize(reply, lobby, timestamp=42)

    assert result.parser == "json"
    assert result.total_persons == 5
    assert result.counts == {"persons_near_doors": 2, "persons_at_reception": 1, "persons_in_other_areas": 2}
    assert result.caption == "Busy morning at the front desk"
    assert result.scene_description.startswith('<span class="ai-caption">Busy morning at the front desk</span>')
    assert result.scene_description.count("ai-caption") == 1
    assert result.sections["people"] == "Five visitors are checking in."
    assert result.timestamp == 42
    assert result.alert_message is None


def test_truncated_json_recovers_description_with_zero_counts(lobby):
    result = ResponseNormalizer().normalize('{"scene_description": "calm lobby", "total_pers', lobby)

    assert result.parser == "partial"
    assert result.total_persons == 0
    assert set(result.counts.values()) == {0}
    assert "calm lobby" in result.scene_description


def test_partial_json_picks_up_numbers_before_the_cut(lobby):
    text = '{"total_persons": 3, "persons_near_doors": 1, "scene_description": "A quiet lobby with a few vis'
    result = ResponseNormalizer().normalize(text, lobby)

    assert result.parser == "partial"
    assert result.total_persons == 3
    assert result.counts["persons_near_doors"] == 1
    assert result.counts["persons_at_reception"] == 0


def test_compact_schema_maps_alert_flags_to_counts(safety):
    reply = json.dumps({
        "title": "Visitor slipped near the entrance",
        "scene": {"environment": "Wet floor by the doors", "people": "One person on the ground"},
        "total_persons": 2,
        "alerts": {"person_fallen": True, "smoke_or_fire": False, "exit_blocked": "no"},
        "alert_message": "Person down at the entrance",
    })
    result = ResponseNormalizer().normalize(reply, safety)

    assert result.parser == "compact"
    assert result.total_persons == 2
    assert result.counts == {"person_fallen": 1, "smoke_or_fire": 0, "exit_blocked": 0}
    assert result.caption == "Visitor slipped near the entrance"
    assert result.alert_message == "Person down at the entrance"
    assert result.sections["environment"] == "Wet floor by the doors"
    assert result.sections["people"] == "One person on the ground"


def test_alert_is_synthesized_when_backend_gives_none(safety):
    reply = json.dumps({
        "title": "Smoke near the stairwell",
        "alerts": {"person_fallen": False, "smoke_or_fire": True, "exit_blocked": False},
    })
    result = ResponseNormalizer().normalize(reply, safety)

    assert result.alert_message == "Safety alert: Smoke or Fire: 1. Please check the lobby camera."


def test_threshold_alert_uses_template_values(lobby):
    reply = json.dumps({
        "total_persons": 6, "persons_near_doors": 5, "persons_at_reception": 1,
        "persons_in_other_areas": 0, "scene_description": "Crowd forming by the entrance doors today.",
    })
    result = ResponseNormalizer().normalize(reply, lobby)

    assert result.alert_message == "Crowding at entrance: 5 people are gathered near the doors."


def test_no_alert_below_threshold(lobby):
    reply = json.dumps({"total_persons": 4, "persons_near_doors": 4, "scene_description": "Four people at the doors."})
    assert ResponseNormalizer().normalize(reply, lobby).alert_message is None


def test_markdown_reply_is_split_into_sections():
    text = (
        "**Busy morning in the lobby**\n\n"
        "Environment: Bright lobby with glass doors.\n"
        "People:\nThree visitors wait by the desk.\n"
        "Status: Normal."
    )
    result = ResponseNormalizer().normalize(text, default_scenario(), edge_mode=True)

    assert result.parser == "markdown"
    assert result.edge_mode is True
    assert result.caption == "Busy morning in the lobby"
    assert result.sections == {
        "location": "Bright lobby with glass doors.",
        "people": "Three visitors wait by the desk.",
        "overall": "Normal.",
    }
    assert "**🏢 Location & Environment:**" in result.scene_description


def test_free_text_falls_back_to_first_sentence(lobby):
    text = "The lobby is empty apart from a cleaning cart. Lights are on."
    result = ResponseNormalizer().normalize(text, lobby)

    assert result.parser == "fallback"
    assert result.total_persons == 0
    assert result.caption == "The lobby is empty apart from a cleaning cart."
    assert "Lights are on." in result.scene_description


def test_counts_summary_caption_when_text_is_empty(lobby):
    reply = json.dumps({"total_persons": 3, "persons_near_doors": 2, "persons_at_reception": 1,
                        "persons_in_other_areas": 0, "scene_description": ""})
    result = ResponseNormalizer().normalize(reply, lobby)

    assert result.caption == "3 people visible: 2 near doors, 1 at reception"


def test_empty_reply_gets_generic_caption(lobby):
    result = ResponseNormalizer().normalize("", lobby)
    assert result.caption == GENERIC_CAPTION
    assert result.scene_description == f'<span class="ai-caption">{GENERIC_CAPTION}</span>'


def test_long_caption_is_truncated(lobby):
    title = "A " + "very " * 60 + "long caption"
    result = ResponseNormalizer().normalize(json.dumps({"title": title, "scene": "x"}), lobby)

    assert len(result.caption) <= CAPTION_MAX
    assert result.caption.endswith("...")


def test_generated_caption_is_html_escaped(lobby):
    result = ResponseNormalizer().normalize(json.dumps({"title": "Doors <open> & busy", "scene": "x"}), lobby)

    assert result.caption == "Doors <open> & busy"
    assert '<span class="ai-caption">Doors &lt;open&gt; &amp; busy</span>' in result.scene_description


def test_failure_result_is_zero_count(lobby):
    result = ResponseNormalizer().failure("timed_out", "Error analyzing frame: timed out", lobby, timestamp=7)

    assert result.parser == "error"
    assert result.status == "timed_out"
    assert result.total_persons == 0
    assert set(result.counts) == set(lobby.metric_keys)
    assert result.error == "Error analyzing frame: timed out"


def test_split_sections_ignores_caption_span(lobby):
    markup = ('<span class="ai-caption">Hi</span>\n\n**🏢 Location & Environment:**\nLobby\n\n'
              "**📊 Overall Status:**\nCalm")
    assert split_sections(markup, lobby.sections) == {"location": "Lobby", "overall": "Calm"}


def test_caption_span_with_extra_attributes_is_kept(lobby):
    reply = fenced({
        "total_persons": 0,
        "persons_near_doors": 0,
        "persons_at_reception": 0,
        "persons_in_other_areas": 0,
        "scene_description": '<span class="ai-caption" data-x="1">Quiet morning</span>\n\n'
                             "**📊 Overall Status:**\nCalm",
    })
    result = ResponseNormalizer().normalize(reply, lobby)

    assert result.caption == "Quiet morning"
    assert result.scene_description.startswith('<span class="ai-caption" data-x="1">Quiet morning</span>')
    assert result.scene_description.count("ai-caption") == 1
    assert result.sections["overall"] == "Calm"


def test_split_sections_ignores_caption_span_with_multiple_classes(lobby):
    markup = "<span class='lead ai-caption'>Hi</span>\n\n**📊 Overall Status:**\nCalm"
    assert split_sections(markup, lobby.sections) == {"overall": "Calm"}
