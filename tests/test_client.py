from conftest import signup

from client import ADVISOR_ERROR_MESSAGE, WELCOME_MESSAGE, AdvisorChat, ApiError, SpendSenseClient

import pytest


@pytest.fixture
def api(client):
    return SpendSenseClient(base_url="http://testserver", session=client)


def test_chat_starts_with_welcome(api):
    chat = AdvisorChat(api)
    assert [(m.sender, m.text) for m in chat.messages] == [("ai", WELCOME_MESSAGE)]


def test_chat_appends_question_and_answer(api, advisor):
    chat = AdvisorChat(api)

    reply = chat.send("  Should I save more?  ")

    assert reply.sender == "ai"
    assert reply.text == advisor.answer
    assert [m.sender for m in chat.messages] == ["ai", "user", "ai"]
    assert chat.messages[1].text == "Should I save more?"
    assert not chat.pending


def test_chat_shows_errors_as_bubbles(api, advisor):
    advisor.fail = True
    chat = AdvisorChat(api)

    reply = chat.send("Why?")

    assert reply.sender == "error"
    assert reply.text == ADVISOR_ERROR_MESSAGE
    assert chat.draft == "Why?"
    assert not chat.pending


def test_chat_ignores_empty_and_concurrent_questions(api):
    chat = AdvisorChat(api)
    assert chat.send("   ") is None

    chat.pending = True
    assert chat.send("second question") is None
    assert len(chat.messages) == 1


def test_client_session_flow(api, client, store):
    signup(client, store)
    api.login("ana@spendsense.io", "secret123")

    api.set_income(3000)
    created = api.add_expense("Rent", 800, "Needs")
    api.update_expense(created["id"], "Rent", 850, "Needs")
    dashboard = api.dashboard()

    assert dashboard["summary"]["total_spent"] == 850
    assert [e["name"] for e in api.expenses()] == ["Rent"]

    api.delete_expense(created["id"])
    assert api.expenses() == []

    api.logout()
    assert api.token is None


def test_client_raises_api_errors(api):
    with pytest.raises(ApiError) as info:
        api.login("nobody@spendsense.io", "secret123")
    assert info.value.status_code == 400
    assert info.value.message == "Incorrect email or password"
