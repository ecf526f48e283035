import asyncio

import models
from builders import greeting_flow, make_campaign
from services.engine import create_session
from worker import extract_incoming_messages, handle_session_advance, handle_whatsapp_event, resolve_client_ids


def meta_payload(*messages, phone_number_id="123456"):
    return {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {
        "metadata": {"phone_number_id": phone_number_id},
        "messages": list(messages),
    }}]}]}


class TestExtractIncomingMessages:
    def test_text_button_and_interactive(self):
        payload = meta_payload(
            {"from": "5511999990000", "type": "text", "text": {"body": "oi"}},
            {"from": "5511999990001", "type": "button", "button": {"text": "Quero"}},
            {"from": "5511999990002", "type": "interactive", "interactive": {"button_reply": {"title": "Sim"}}},
            {"from": "5511999990003", "type": "interactive", "interactive": {"list_reply": {"title": "Plano B"}}},
        )
        assert extract_incoming_messages(payload) == [
            {"phone": "5511999990000", "text": "oi", "phone_number_id": "123456"},
            {"phone": "5511999990001", "text": "Quero", "phone_number_id": "123456"},
            {"phone": "5511999990002", "text": "Sim", "phone_number_id": "123456"},
            {"phone": "5511999990003", "text": "Plano B", "phone_number_id": "123456"},
        ]

    def test_status_updates_and_media_are_ignored(self):
        payload = {"entry": [{"changes": [{"value": {
            "metadata": {"phone_number_id": "123456"},
            "statuses": [{"id": "wamid.1", "status": "delivered"}],
            "messages": [{"from": "5511999990000", "type": "image", "image": {"id": "m1"}}],
        }}]}]}
        assert extract_incoming_messages(payload) == []
        assert extract_incoming_messages({}) == []


class TestWhatsAppEvents:
    def test_resolve_client_by_config(self, db, tenant):
        db.add(models.AppConfig(client_id=tenant.id, key="WA_PHONE_NUMBER_ID", value="777"))
        db.commit()
        assert resolve_client_ids(db, "777") == [tenant.id]
        assert resolve_client_ids(db, "888") == []
        assert resolve_client_ids(db, None) == []

    def test_reply_wakes_waiting_session(self, db, tenant, make_contact, collaborators, sender, monkeypatch):
        monkeypatch.setattr("services.engine.build_collaborators", lambda client_id: collaborators)
        db.add(models.AppConfig(client_id=tenant.id, key="WA_PHONE_NUMBER_ID", value="123456"))
        campaign = make_campaign(db, tenant.id, greeting_flow())
        session = create_session(db, campaign, make_contact(phone="5511999990000"))
        session.current_node_id = "ask"
        session.waiting_for = "reply"
        db.commit()

        payload = meta_payload({"from": "5511999990000", "type": "text", "text": {"body": "sim"}})
        woken = asyncio.run(handle_whatsapp_event(payload, use_queue=False))

        assert woken == 1
        assert sender.texts == ["Great!"]
        db.expire_all()
        assert db.get(models.FlowSession, session.id).status == models.SessionStatus.COMPLETED

    def test_reply_from_unknown_number(self, db, tenant):
        payload = meta_payload({"from": "5511000000000", "type": "text", "text": {"body": "sim"}})
        assert asyncio.run(handle_whatsapp_event(payload, use_queue=False)) == 0


class TestSessionAdvanceConsumer:
    def test_advances_and_publishes_event(self, db, tenant, make_contact, collaborators, sender, monkeypatch,
                                          rabbit_offline):
        monkeypatch.setattr("services.engine.build_collaborators", lambda client_id: collaborators)
        campaign = make_campaign(db, tenant.id, greeting_flow())
        session = create_session(db, campaign, make_contact())
        db.commit()

        asyncio.run(handle_session_advance({"session_id": session.id}))

        assert sender.texts == ["Hi Ana"]
        events = [data for name, data in rabbit_offline if name == "session_updated"]
        assert events == [{
            "session_id": session.id,
            "campaign_id": campaign.id,
            "status": "ACTIVE",
            "current_node_id": "ask",
        }]

    def test_message_without_session_id_is_ignored(self, db, sender):
        asyncio.run(handle_session_advance({}))
        assert sender.sent == []
