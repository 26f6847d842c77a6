"""End-to-end turns through the conversation engine.

Every collaborator is a scripted fake, so each scenario pins down the
thread items a turn appends, what is persisted, and which side effects
ran.
"""

import json

import pytest

from src.core.exceptions import (
    InteractionValidationError,
    LLMInvalidResponseError,
    LLMServiceUnavailableError,
    LLMTimeoutError,
    SessionClosedError,
)
from src.domain.models.actions import Action
from src.domain.models.interaction import ButtonClick, FormSubmission, MessageInteraction
from src.domain.models.metrics import SessionMetrics
from src.domain.models.session import ConversationState
from src.domain.models.thread import (
    AssistantItem,
    FlaggedItem,
    FormItem,
    NotificationItem,
    ReportItem,
    SystemItem,
    ToolCallItem,
    ToolOutputItem,
    UserItem,
)
from src.services.conversation_engine import TRANSIENT_FAILURE_MESSAGE
from tests.fakes import assistant_reply, tool_call_reply


def tool_names(call):
    return [tool["function"]["name"] for tool in call["tools"] or []]


async def file_report(engine, session, completion_client):
    """Run the turn that records details and files the maintenance report."""
    completion_client.queue(
        tool_call_reply(
            ("record_details", {"postal_code": "94110", "issue": "Kitchen tap leaking"}),
            ("submit_report", {"summary": "Leaking kitchen tap"}),
        ),
        assistant_reply("I filed your report."),
    )
    return await engine.handle_interaction(
        session, MessageInteraction(text="My kitchen tap leaks, postal code 94110")
    )


class TestMessageTurn:
    @pytest.mark.asyncio
    async def test_reply_while_fields_missing(self, engine, session, completion_client, store):
        completion_client.queue(assistant_reply("Which postal code is the property in?"))
        start = len(session.thread)

        updated, result = await engine.handle_interaction(session, MessageInteraction(text="I have a leak"))

        assert [type(item) for item in result.new_items] == [UserItem, AssistantItem]
        assert result.new_items == updated.thread[start:]
        assert result.state == ConversationState.IDLE
        assert result.persisted
        assert updated.state == ConversationState.IDLE
        assert updated.reports == {}

        request = completion_client.calls[0]
        assert tool_names(request) == ["record_details"]
        assert request["messages"][0]["role"] == "system"
        assert "Still missing before a report can be filed: postal_code, issue" in request["messages"][0]["content"]
        assert request["messages"][-1] == {"role": "user", "content": "I have a leak"}
        assert request["model_params"] == {"temperature": 0.3, "max_tokens": 600}

        # The caller's session is a snapshot; the committed copy is stored
        assert len(session.thread) == start
        assert len((await store.load(session.ref_code)).thread) == start + 2

    @pytest.mark.asyncio
    async def test_metrics_follow_the_thread(self, engine, session, completion_client):
        completion_client.queue(assistant_reply("Noted.", input_tokens=40, output_tokens=7))

        updated, _ = await engine.handle_interaction(session, MessageInteraction(text="Hello"))

        assert updated.metrics.user_messages == 1
        assert updated.metrics.output_tokens == 7
        assert updated.metrics == SessionMetrics.from_thread(updated.thread)

    @pytest.mark.asyncio
    async def test_transient_completion_failures_retried(
        self, engine, session, completion_client, sleep
    ):
        completion_client.queue(
            LLMTimeoutError("slow"), LLMTimeoutError("slow"), assistant_reply("Sorry for the wait.")
        )

        updated, result = await engine.handle_interaction(session, MessageInteraction(text="I have a leak"))

        assert [type(item) for item in result.new_items] == [UserItem, AssistantItem]
        assert len(completion_client.calls) == 3
        assert sleep.delays == [1.0, 2.0]
        assert result.persisted

    @pytest.mark.asyncio
    async def test_flagged_input_skips_completion(self, engine, session, completion_client):
        updated, result = await engine.handle_interaction(
            session, MessageInteraction(text="I will attack the landlord")
        )

        assert len(result.new_items) == 1
        flagged = result.new_items[0]
        assert isinstance(flagged, FlaggedItem)
        assert flagged.content == "I will attack the landlord"
        assert flagged.verdict["categories"] == ["violence"]
        assert completion_client.calls == []
        assert updated.metrics.flagged_messages == 1
        assert result.persisted
        assert result.error == "ModerationFlagged"

    @pytest.mark.asyncio
    async def test_flagged_text_never_sent_to_model(self, engine, session, completion_client):
        updated, _ = await engine.handle_interaction(session, MessageInteraction(text="attack"))
        completion_client.queue(assistant_reply("How can I help?"))

        await engine.handle_interaction(updated, MessageInteraction(text="Sorry, I have a leak"))

        contents = [m["content"] for m in completion_client.calls[0]["messages"]]
        assert "attack" not in contents


class TestToolTurn:
    @pytest.mark.asyncio
    async def test_tool_chain_files_report_and_loops_once(self, engine, session, completion_client):
        updated, result = await file_report(engine, session, completion_client)

        assert [type(item) for item in result.new_items] == [
            UserItem,
            ToolCallItem,
            ToolOutputItem,
            ReportItem,
            ToolOutputItem,
            AssistantItem,
        ]
        assert result.completion_rounds == 2
        assert updated.session_data == {"postal_code": "94110", "issue": "Kitchen tap leaking"}
        assert updated.reports["maintenance"]["summary"] == "Leaking kitchen tap"
        assert [o.message.tool_call_id for o in result.new_items if isinstance(o, ToolOutputItem)] == [
            "call_0",
            "call_1",
        ]

        # The follow-up completion sees the tool outputs, and submit_report is gone
        second = completion_client.calls[1]
        assert [m["role"] for m in second["messages"][-3:]] == ["assistant", "tool", "tool"]
        assert tool_names(second) == ["record_details"]

    @pytest.mark.asyncio
    async def test_rejected_tool_call_reported_to_model(self, engine, session, completion_client):
        completion_client.queue(tool_call_reply(("submit_report", {"summary": "Too early"})))

        updated, result = await engine.handle_interaction(session, MessageInteraction(text="File it now"))

        output = result.new_items[-1]
        assert isinstance(output, ToolOutputItem)
        assert output.success is False
        assert "not available" in json.loads(output.message.content)["error"]
        assert "maintenance" not in updated.reports
        assert result.completion_rounds == 1

    @pytest.mark.asyncio
    async def test_empty_completion_aborts_turn(self, engine, session, completion_client):
        completion_client.queue(assistant_reply(""))

        kept, result = await engine.handle_interaction(session, MessageInteraction(text="Hi"))

        assert kept is session
        assert result.error == "LLMInvalidResponseError"


class TestFormTurn:
    @pytest.mark.asyncio
    async def test_submission_runs_form_actions(self, engine, session, completion_client):
        completion_client.queue(assistant_reply("Thanks Ann. What is the issue?"))
        form_index = next(i for i, item in enumerate(session.thread) if isinstance(item, FormItem))

        updated, result = await engine.handle_interaction(
            session,
            FormSubmission(
                form_key="contact_details",
                fields={"name": "Ann", "email": "ann@example.com"},
            ),
        )

        assert [type(item) for item in result.new_items] == [SystemItem, NotificationItem, AssistantItem]
        assert updated.thread[form_index].submitted is True
        assert updated.session_data == {"name": "Ann", "email": "ann@example.com"}
        assert result.new_items[1].content == "Thanks Ann, we will use ann@example.com for updates."
        assert "contact_details" in result.new_items[0].message.content
        assert completion_client.calls[0]["messages"][-1]["role"] == "system"

    @pytest.mark.asyncio
    async def test_missing_required_field_rejected(self, engine, session, store):
        stored = store.documents[session.ref_code]

        with pytest.raises(InteractionValidationError, match="email"):
            await engine.handle_interaction(
                session, FormSubmission(form_key="contact_details", fields={"name": "Ann"})
            )

        assert store.documents[session.ref_code] == stored

    @pytest.mark.asyncio
    async def test_form_cannot_be_submitted_twice(self, engine, session):
        submission = FormSubmission(
            form_key="contact_details", fields={"name": "Ann", "email": "ann@example.com"}
        )
        updated, _ = await engine.handle_interaction(session, submission)

        with pytest.raises(InteractionValidationError):
            await engine.handle_interaction(updated, submission)

    @pytest.mark.asyncio
    async def test_gating_action_failure_leaves_form_open(
        self, engine, tenant, session, completion_client, notifier
    ):
        tenant.forms["contact_details"].actions.insert(
            0,
            Action(
                kind="send_notification",
                name="confirm_contact",
                gating=True,
                params={
                    "recipient": "{{ session_data.email }}",
                    "subject": "Contact details received",
                    "body": "Thanks {{ session_data.name }}",
                },
            ),
        )
        notifier.failures = 2
        form_index = next(i for i, item in enumerate(session.thread) if isinstance(item, FormItem))
        submission = FormSubmission(
            form_key="contact_details", fields={"name": "Ann", "email": "ann@example.com"}
        )

        failed, result = await engine.handle_interaction(session, submission)

        assert result.persisted
        assert [type(item) for item in result.new_items] == [SystemItem, NotificationItem]
        assert result.new_items[0].disabled is True
        assert result.new_items[1].level == "error"
        assert "confirm_contact" in result.new_items[1].content
        assert failed.thread[form_index].submitted is False
        assert completion_client.calls == []

        completion_client.queue(assistant_reply("Thanks Ann. What is the issue?"))
        updated, retried = await engine.handle_interaction(failed, submission)

        assert updated.thread[form_index].submitted is True
        assert [sent["recipient"] for sent in notifier.sent] == ["ann@example.com"]
        assert isinstance(retried.new_items[-1], AssistantItem)

    @pytest.mark.asyncio
    async def test_unknown_form_rejected(self, engine, session):
        with pytest.raises(InteractionValidationError):
            await engine.handle_interaction(session, FormSubmission(form_key="survey", fields={}))


class TestButtonTurn:
    @pytest.mark.asyncio
    async def test_email_report(self, engine, session, completion_client, notifier):
        filed, _ = await file_report(engine, session, completion_client)
        calls_before = len(completion_client.calls)

        updated, result = await engine.handle_interaction(filed, ButtonClick(button_id="email_report"))

        assert len(notifier.sent) == 1
        sent = notifier.sent[0]
        assert sent["recipient"] == "maintenance@harbourview.example"
        assert sent["subject"] == f"Maintenance report {session.ref_code}"
        assert "Postal code: 94110" in sent["body"]
        assert sent["thread_id"] == session.ref_code

        report = next(item for item in updated.thread if isinstance(item, ReportItem))
        assert report.submitted is True
        assert updated.reports["maintenance"]["submitted"] is True
        assert updated.delivery.markers == {"report_emailed": True}
        assert updated.delivery.completed_effects == [f"email-report-{session.ref_code}"]
        assert [type(item) for item in result.new_items] == [NotificationItem]
        assert result.new_items[0].content == "The report was emailed to maintenance@harbourview.example."
        assert len(completion_client.calls) == calls_before

    @pytest.mark.asyncio
    async def test_submitted_report_button_rejected(self, engine, session, completion_client):
        filed, _ = await file_report(engine, session, completion_client)
        emailed, _ = await engine.handle_interaction(filed, ButtonClick(button_id="email_report"))

        with pytest.raises(InteractionValidationError, match="already submitted"):
            await engine.handle_interaction(emailed, ButtonClick(button_id="email_report"))

    @pytest.mark.asyncio
    async def test_gating_failure_keeps_report_open(self, engine, session, completion_client, notifier):
        filed, _ = await file_report(engine, session, completion_client)
        notifier.failures = 2

        updated, result = await engine.handle_interaction(filed, ButtonClick(button_id="email_report"))

        assert result.persisted
        assert [type(item) for item in result.new_items] == [NotificationItem]
        assert result.new_items[0].level == "error"
        assert "email_office" in result.new_items[0].content
        report = next(item for item in updated.thread if isinstance(item, ReportItem))
        assert report.submitted is False
        assert updated.delivery.markers == {}

        # Once the relay recovers the same button works
        retried, _ = await engine.handle_interaction(updated, ButtonClick(button_id="email_report"))
        assert len(notifier.sent) == 1
        assert retried.delivery.markers == {"report_emailed": True}

    @pytest.mark.asyncio
    async def test_email_not_repeated_after_aborted_turn(
        self, engine, session, completion_client, notifier, store
    ):
        filed, _ = await file_report(engine, session, completion_client)
        store.save_failures = 2

        kept, aborted = await engine.handle_interaction(filed, ButtonClick(button_id="email_report"))

        assert aborted.persisted is False
        assert aborted.error == "PersistenceError"
        assert kept is filed
        assert len(notifier.sent) == 1
        assert kept.delivery.completed_effects == [f"email-report-{session.ref_code}"]
        stored = await store.load(session.ref_code)
        assert stored.delivery.completed_effects == [f"email-report-{session.ref_code}"]
        assert len(stored.thread) == len(filed.thread)

        retried, result = await engine.handle_interaction(kept, ButtonClick(button_id="email_report"))

        assert result.persisted
        assert len(notifier.sent) == 1
        assert retried.delivery.markers == {"report_emailed": True}

    @pytest.mark.asyncio
    async def test_aborted_turn_survives_failed_effect_save(
        self, engine, session, completion_client, notifier, store
    ):
        filed, _ = await file_report(engine, session, completion_client)
        stored_before = store.documents[session.ref_code]
        store.save_failures = 4

        kept, aborted = await engine.handle_interaction(filed, ButtonClick(button_id="email_report"))

        assert aborted.persisted is False
        assert aborted.error == "PersistenceError"
        assert len(notifier.sent) == 1
        assert kept.delivery.completed_effects == [f"email-report-{session.ref_code}"]
        assert store.documents[session.ref_code] == stored_before

    @pytest.mark.asyncio
    async def test_button_without_report_rejected(self, engine, session):
        with pytest.raises(InteractionValidationError):
            await engine.handle_interaction(
                session, ButtonClick(button_id="email_report", item_index=0)
            )

    @pytest.mark.asyncio
    async def test_unknown_button_rejected(self, engine, session):
        with pytest.raises(InteractionValidationError, match="Unknown button"):
            await engine.handle_interaction(session, ButtonClick(button_id="self_destruct"))


class TestAbortedTurn:
    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_session_unchanged(
        self, engine, session, completion_client, store
    ):
        completion_client.queue(*[LLMTimeoutError("slow")] * 3)
        stored = store.documents[session.ref_code]
        thread = list(session.thread)

        kept, result = await engine.handle_interaction(session, MessageInteraction(text="I have a leak"))

        assert kept is session
        assert kept.thread == thread
        assert kept.state == ConversationState.IDLE
        assert store.documents[session.ref_code] == stored
        assert result.persisted is False
        assert result.error == "LLMTimeoutError"
        assert len(result.new_items) == 1
        notice = result.new_items[0]
        assert isinstance(notice, NotificationItem)
        assert notice.level == "error"
        assert notice.content == TRANSIENT_FAILURE_MESSAGE

    @pytest.mark.asyncio
    async def test_non_retryable_completion_error_not_retried(self, engine, session, completion_client):
        completion_client.queue(LLMInvalidResponseError("garbled"))

        kept, result = await engine.handle_interaction(session, MessageInteraction(text="Hi"))

        assert len(completion_client.calls) == 1
        assert result.error == "LLMInvalidResponseError"
        assert kept is session

    @pytest.mark.asyncio
    async def test_moderation_outage_aborts(self, engine, session, moderation_client, completion_client):
        moderation_client.errors = [LLMServiceUnavailableError("down")] * 3

        kept, result = await engine.handle_interaction(session, MessageInteraction(text="Hi"))

        assert result.error == "LLMServiceUnavailableError"
        assert len(moderation_client.calls) == 3
        assert completion_client.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_error_aborts(self, engine, session, completion_client):
        completion_client.queue(RuntimeError("bug"))

        kept, result = await engine.handle_interaction(session, MessageInteraction(text="Hi"))

        assert kept is session
        assert result.error == "RuntimeError"


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_create_runs_on_start(self, engine, store):
        session = await engine.create_session()

        assert session.session_type == "maintenance"
        assert session.mode_tags == ["intake"]
        assert session.state == ConversationState.IDLE
        greeting, form = session.thread
        assert isinstance(greeting, AssistantItem)
        assert "Harbourview Property Management" in greeting.message.content
        assert isinstance(form, FormItem) and form.form_key == "contact_details"
        assert session.ref_code in store.documents

    @pytest.mark.asyncio
    async def test_unknown_session_type(self, engine):
        with pytest.raises(Exception, match="Unknown session type"):
            await engine.create_session(session_type="sales")

    @pytest.mark.asyncio
    async def test_closed_session_rejects_interactions(self, engine, session):
        closed = await engine.close_session(session)

        assert closed.state == ConversationState.CLOSED
        with pytest.raises(SessionClosedError):
            await engine.handle_interaction(closed, MessageInteraction(text="Hello?"))
