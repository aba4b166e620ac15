from __future__ import annotations

import pytest

from conftest import ADMIN, CHAT, OWNER, USER, make_message, make_session
from vetting.constants import HELP_TEXT, STATE_AWAITING_RULES_ACK, STATE_PENDING_REVIEW
from vetting.controller import Controller
from vetting.models import Answer, Dob, Photo, QuotedMessage
from vetting.reporting import ReportBuilder


@pytest.fixture
def controller(manager, repo, questions, transport, selection, tmp_path):
    return Controller(
        manager,
        repo,
        questions,
        transport,
        selection,
        ReportBuilder(exports_dir=tmp_path),
        owner_id=OWNER,
        prefix=".",
    )


def _command(text: str, user: str = ADMIN, **kwargs):
    return make_message(text, user=user, name="Admin", **kwargs)


def _menu_id(transport, marker: str) -> str:
    return [mid for mid, text in zip(transport.ids, transport.texts()) if marker in text][-1]


@pytest.mark.asyncio
async def test_settings_require_admin(controller, repo, settings, transport):
    await controller.handle_message(_command(".interviewsettings threshold 85", user=USER))

    assert transport.texts()[-1] == "Only group admins can use this command."
    assert repo.get_settings(CHAT).pass_threshold == 70


@pytest.mark.asyncio
@pytest.mark.parametrize("user", [ADMIN, OWNER])
async def test_admin_and_owner_change_settings(controller, repo, settings, transport, user):
    await controller.handle_message(_command(".interviewsettings threshold 85", user=user))
    await controller.handle_message(_command(".interviewsettings timeout 10", user=user))
    await controller.handle_message(_command(".interviewsettings autokick on", user=user))

    saved = repo.get_settings(CHAT)
    assert saved.pass_threshold == 85
    assert saved.response_timeout == 600
    assert saved.auto_remove_on_fail is True
    assert transport.texts()[-1] == "Setting updated: autokick."


@pytest.mark.asyncio
async def test_invalid_settings_are_explained(controller, repo, settings, transport):
    await controller.handle_message(_command(".interviewsettings threshold 150"))
    assert transport.texts()[-1] == "threshold must be between 1 and 100."

    await controller.handle_message(_command(".interviewsettings colour blue"))
    assert transport.texts()[-1] == HELP_TEXT.format(p=".")

    await controller.handle_message(_command(".interviewsettings"))
    assert transport.texts()[-1].startswith("Interview settings\nEnabled: yes")
    assert repo.get_settings(CHAT).pass_threshold == 70


@pytest.mark.asyncio
async def test_exempt_by_reply(controller, repo, settings):
    quoted = QuotedMessage(id="77", text="hi", sender_id=USER)
    await controller.handle_message(_command(".interviewsettings exempt", quoted=quoted))
    assert repo.get_settings(CHAT).exempt_operators == [USER]

    await controller.handle_message(_command(f".interviewsettings unexempt {USER}"))
    assert repo.get_settings(CHAT).exempt_operators == []


@pytest.mark.asyncio
async def test_candidate_start_and_status(controller, repo, settings, transport):
    await controller.handle_message(make_message(".status"))
    assert transport.texts()[-1] == "You have no interview yet. Send .interview to start."

    await controller.handle_message(make_message(".interview"))
    assert repo.find_open_session(CHAT, USER) is not None

    await controller.handle_message(make_message(".interview"))
    assert transport.texts()[-1] == "You already have an interview in progress."

    await controller.handle_message(make_message(".status"))
    status = transport.texts()[-1]
    assert "Interview status: answering questions" in status
    assert "Progress: 0/10 questions" in status


@pytest.mark.asyncio
async def test_plain_text_reaches_session(controller, repo, settings):
    await controller.handle_message(make_message(".interview"))
    await controller.handle_message(make_message("My name is Sam and I like long walks by the river"))

    session = repo.find_open_session(CHAT, USER)
    assert session.cursor == 1
    assert session.answers[0].raw_answer.startswith("My name is Sam")


@pytest.mark.asyncio
async def test_unknown_prefixed_text_is_an_answer(controller, repo, settings):
    await controller.handle_message(make_message(".interview"))
    await controller.handle_message(make_message(".net developer from Porto"))

    assert repo.find_open_session(CHAT, USER).answers[0].raw_answer == ".net developer from Porto"


@pytest.mark.asyncio
async def test_admin_action_targets_quoted_sender(controller, repo, settings, transport):
    await controller.handle_message(make_message(".interview"))

    await controller.handle_message(_command(".approve"))
    assert transport.texts()[-1] == "Usage: .approve @user"

    quoted = QuotedMessage(id="12", text="hello", sender_id=USER)
    await controller.handle_message(_command(".approve", quoted=quoted))
    assert transport.texts()[-1] == f"Cannot approve {USER}: mandatory photo missing."

    await controller.handle_message(_command(f".end @{USER}"))
    assert transport.texts()[-1] == f"Done: end for {USER} (ended by an admin)."
    assert repo.find_open_session(CHAT, USER) is None


@pytest.mark.asyncio
async def test_pending_menu_opens_transcript(controller, repo, settings, transport, clock, tmp_path):
    repo.save_session(make_session(clock, state=STATE_PENDING_REVIEW, percentage=64.0, verdict_feedback="Borderline"))

    await controller.handle_message(_command(".pending"))
    listing = transport.texts()[-1]
    assert f"1. Sam ({USER}) - 64%" in listing

    reply = _command("1", quoted=QuotedMessage(id=transport.ids[-1], text=listing))
    await controller.handle_message(reply)

    transcript = transport.texts()[-1]
    assert transcript.startswith(f"Transcript for Sam ({USER})")
    assert "Feedback: Borderline" in transcript
    assert len(list(tmp_path.glob("*.json"))) == 1


@pytest.mark.asyncio
async def test_choice_menu_reply_records_option(controller, manager, repo, questions, settings, transport, clock):
    bank = questions.questions_for(CHAT)
    answers = [Answer(q.id, q.text, "ok", float(q.weight), float(q.weight), "", clock.now_iso()) for q in bank[:9]]
    repo.save_session(
        make_session(
            clock,
            question_ids=[q.id for q in bank],
            cursor=9,
            answers=answers,
            photo=Photo("image/jpeg", "message:1"),
            dob=Dob(8, 12, 1999),
        )
    )

    # Resuming re-sends the current prompt with its numbered options.
    await controller.handle_message(make_message(".interview"))
    menu_id = _menu_id(transport, "question 10/10")

    stranger = make_message("1", user="9999", quoted=QuotedMessage(id=menu_id, text="menu"))
    await controller.handle_message(stranger)
    assert repo.find_open_session(CHAT, USER).cursor == 9

    await controller.handle_message(make_message("1", quoted=QuotedMessage(id=menu_id, text="menu")))

    session = repo.find_open_session(CHAT, USER)
    assert session.state == STATE_AWAITING_RULES_ACK
    assert session.answers[-1].raw_answer == "Tech"


def _answered(bank, clock, count):
    return [Answer(q.id, q.text, "ok", float(q.weight), float(q.weight), "", clock.now_iso()) for q in bank[:count]]


@pytest.mark.asyncio
async def test_reply_to_menu_of_answered_question_is_ordinary_text(controller, repo, questions, settings, transport, clock):
    questions.move(CHAT, "topic", 4)
    bank = questions.questions_for(CHAT)
    repo.save_session(
        make_session(
            clock,
            questions_ref=questions.current_ref(CHAT),
            question_ids=[q.id for q in bank],
            cursor=3,
            answers=_answered(bank, clock, 3),
            photo=Photo("image/jpeg", "message:1"),
            dob=Dob(8, 12, 1999),
        )
    )
    await controller.handle_message(make_message(".interview"))
    menu_id = _menu_id(transport, "question 4/10")

    await controller.handle_message(make_message("Tech"))
    await controller.handle_message(make_message("2", quoted=QuotedMessage(id=menu_id, text="menu")))

    session = repo.find_open_session(CHAT, USER)
    assert session.cursor == 5
    assert [(a.question_id, a.raw_answer) for a in session.answers[3:]] == [("topic", "Tech"), ("motivation", "2")]


@pytest.mark.asyncio
async def test_menu_for_another_question_is_dropped(controller, repo, questions, selection, settings, store, clock):
    bank = questions.questions_for(CHAT)
    session = make_session(clock, question_ids=[q.id for q in bank])
    repo.save_session(session)
    selection.remember(
        "900",
        CHAT,
        "question_choice",
        ["Tech", "Sports"],
        "question_choice",
        {"session_id": session.id, "user_id": USER, "question_id": "topic"},
    )

    await controller.handle_message(make_message("1", quoted=QuotedMessage(id="900", text="menu")))

    stored = repo.find_open_session(CHAT, USER)
    assert [(a.question_id, a.raw_answer) for a in stored.answers] == [("intro", "1")]
    assert store.get("interview_selection_contexts", f"{CHAT}:900") is None
    assert await selection.dispatch(make_message("1", quoted=QuotedMessage(id="900", text="menu"))) is False


@pytest.mark.asyncio
async def test_question_bank_commands(controller, questions, transport):
    await controller.handle_message(_command(".questions add choice Favourite season? | Summer, Winter"))
    assert transport.texts()[-1] == "Added question favourite_season."
    assert questions.questions_for(CHAT)[-1].choices == ["Summer", "Winter"]

    await controller.handle_message(_command(".questions list"))
    assert "11. (favourite_season, choice, w10) Favourite season? [Summer, Winter]" in transport.texts()[-1]

    await controller.handle_message(_command(".questions remove photo"))
    assert "exactly one photo" in transport.texts()[-1]

    await controller.handle_message(_command(".questions add essay Tell a story"))
    assert transport.texts()[-1].startswith("Usage: .questions add")


@pytest.mark.asyncio
async def test_eval_prompt_commands(controller, repo, transport):
    await controller.handle_message(_command(".evalprompt set Judge this candidate"))
    assert transport.texts()[-1] == "The evaluation prompt must contain ${responses}."
    assert repo.has_custom_eval_prompt(CHAT) is False

    await controller.handle_message(_command(".evalprompt set Judge: ${responses}"))
    assert repo.get_eval_prompt(CHAT) == "Judge: ${responses}"

    await controller.handle_message(_command(".evalprompt reset"))
    assert repo.has_custom_eval_prompt(CHAT) is False


@pytest.mark.asyncio
async def test_stats_command(controller, repo, transport):
    repo.increment_stat(CHAT, "total", 4)
    repo.increment_stat(CHAT, "approved", 3)
    repo.increment_stat(CHAT, "rejected", 1)

    await controller.handle_message(_command(".interviewstats"))

    text = transport.texts()[-1]
    assert "Started: 4" in text
    assert "Pass rate: 75%" in text


@pytest.mark.asyncio
async def test_join_starts_interview(controller, repo, settings, transport):
    await controller.handle_membership(CHAT, USER, "joined", "Sam")

    assert repo.find_open_session(CHAT, USER) is not None
    assert transport.texts()[0].startswith("Welcome Sam!")


def test_resolve_target_precedence():
    quoted = QuotedMessage(id="1", sender_id="222")
    assert Controller.resolve_target(make_message(".end", mentions=["111"], quoted=quoted), "333") == "111"
    assert Controller.resolve_target(make_message(".end", quoted=quoted), "333") == "222"
    assert Controller.resolve_target(make_message(".end"), "@333") == "333"
    assert Controller.resolve_target(make_message(".end"), "") is None
