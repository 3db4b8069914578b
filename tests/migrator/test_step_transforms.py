"""Row-level transforms of individual entity steps."""

import pytest

from legacy_bridge.migrator.errors import SkipRow
from legacy_bridge.migrator.steps.campaigns import CampaignContactsStep, CampaignsStep, campaign_contact_status, collect_messages
from legacy_bridge.migrator.steps.catalog import DEFAULT_COLOR, QuickMessagesStep, SettingsStep, normalize_color
from legacy_bridge.migrator.steps.channels import ChannelsStep
from legacy_bridge.migrator.steps.contacts import ContactsStep, build_jid, digits_only
from legacy_bridge.migrator.steps.tasks import MIGRATED_COMMENT_TITLE, TasksStep, task_type_key
from legacy_bridge.migrator.steps.tenants import build_subdomain, normalize_registry_number
from legacy_bridge.migrator.steps.users import UsersStep, is_valid_email, parse_queue_ids, placeholder_email


def _user_lookups(**overrides):
    lookups = {"companies": {2}, "departments": {2: {10, 11}, 3: {12}}}
    lookups.update(overrides)
    return lookups


def test_users_transform_is_independent_of_earlier_rows(step_context):
    context = step_context(lookups=_user_lookups())
    step = UsersStep()

    first = step.transform({"id": 4, "company_id": 2, "email": "Ana@Example.com", "profile": "Admin"}, context)
    second = step.transform({"id": 6, "company_id": 2, "email": "ana@example.com"}, context)

    assert first.values["email"] == second.values["email"] == "ana@example.com"
    assert first.values["profile"] == "admin"
    assert context.lookups == _user_lookups()


def test_users_without_email_leave_it_to_the_resolver(step_context):
    payload = UsersStep().transform({"id": 5, "company_id": 2, "email": "  "}, step_context(lookups=_user_lookups()))

    assert payload.values["email"] is None
    assert payload.values["name"] == "Usuário 5"
    assert "permission_id" not in payload.values


def test_users_departments_keep_queues_of_the_same_company(step_context):
    row = {"id": 5, "company_id": 2, "queue_ids": "11,12,10,11,abc"}

    payload = UsersStep().transform(row, step_context(lookups=_user_lookups()))

    assert payload.values["departments"] == [10, 11]


def test_user_email_helpers():
    assert placeholder_email(5, 2) == "user5.2@placeholder.local"
    assert placeholder_email(5, 2, seed=3) == "user5.2.3@placeholder.local"
    assert is_valid_email("ana@example.com")
    assert not is_valid_email("ana@example")
    assert not is_valid_email(None)
    assert parse_queue_ids(None) == []
    assert parse_queue_ids("3,1") == [1, 3]


def test_users_of_unknown_company_are_skipped(step_context):
    context = step_context(lookups=_user_lookups(companies=set()))
    with pytest.raises(SkipRow) as excinfo:
        UsersStep().transform({"id": 5, "company_id": 2}, context)
    assert excinfo.value.reason == "missing_company_fk"



def test_tasks_require_a_known_type_unless_default_type_is_enabled(step_context):
    types = {task_type_key(2, "Follow-up"): 11, task_type_key(2, "Geral"): 12}
    row = {"id": 1, "company_id": 2, "type": "Unknown", "priority": "ALTA", "comments": "call back"}

    with pytest.raises(SkipRow) as excinfo:
        TasksStep().transform(row, step_context(lookups={"task_types": types}))
    assert excinfo.value.reason == "missing_task_type"

    context = step_context(lookups={"task_types": types}, tasks_default_type=True, tasks_default_type_name="Geral")
    payload = TasksStep().transform(row, context)
    assert payload.values["task_type_id"] == 12
    assert payload.values["priority"] == "high"
    assert payload.values["extra_info"] == [{"title": MIGRATED_COMMENT_TITLE, "content": "call back", "required": False}]


def test_task_type_lookup_ignores_case_and_padding(step_context):
    context = step_context(lookups={"task_types": {task_type_key(2, "Follow-up"): 11}})
    payload = TasksStep().transform({"id": 1, "company_id": 2, "type": " FOLLOW-UP "}, context)
    assert payload.values["task_type_id"] == 11
    assert payload.values["extra_info"] == []
    assert payload.values["priority"] == "medium"


def test_channels_with_unknown_type_are_skipped(step_context):
    context = step_context(lookups={"departments": set(), "department_fallback": {}})
    with pytest.raises(SkipRow) as excinfo:
        ChannelsStep().transform({"id": 1, "company_id": 2, "type": "pager"}, context)
    assert excinfo.value.reason == "unknown_channel_type"


def test_channel_flow_pointer_is_staged_not_written(step_context):
    context = step_context(lookups={"departments": {3}, "department_fallback": {2: 3}})
    payload = ChannelsStep().transform({"id": 1, "company_id": 2, "type": "WABA", "flow_id": 9}, context)

    assert payload.values["type"] == "WhatsAppCloudAPI"
    assert payload.values["flow_id"] is None
    assert payload.values["department_id"] == 3
    assert [(ref.column, ref.old_id) for ref in payload.references] == [("flow_id", "9")]


def test_campaign_helpers():
    assert collect_messages("  hi ", None, "", "bye\x00") == ["hi", "bye"]
    assert campaign_contact_status(2) == "sent"
    assert campaign_contact_status("-1") == "error"
    assert campaign_contact_status(None) == "pending"


def test_campaign_channel_falls_back_to_company_default(step_context):
    context = step_context(lookups={"channels": {30}, "channel_fallback": {2: 30}})
    payload = CampaignsStep().transform(
        {"id": 1, "company_id": 2, "channel_id": 99, "status": "completed", "message1": "a", "message3": "c"},
        context,
    )
    assert payload.values["channel_id"] == 30
    assert payload.values["status"] == "finished"
    assert payload.values["messages"] == ["a", "c"]
    assert payload.values["delay_seconds"] == 0


def test_campaign_contacts_need_campaign_and_contact(step_context):
    context = step_context(lookups={"campaigns": {1}, "contacts": {7}})
    step = CampaignContactsStep()

    with pytest.raises(SkipRow) as excinfo:
        step.transform({"id": 1, "campaign_id": 2, "contact_id": 7}, context)
    assert excinfo.value.reason == "missing_campaign_fk"
    with pytest.raises(SkipRow) as excinfo:
        step.transform({"id": 1, "campaign_id": 1, "contact_id": 8}, context)
    assert excinfo.value.reason == "missing_contact_fk"

    payload = step.transform({"id": 1, "campaign_id": 1, "contact_id": 7, "ack": 1, "timestamp": 0}, context)
    assert payload.values["status"] == "sent"
    assert payload.values["responded"] is False
    assert payload.values["responded_at"] is None


def test_contacts_build_jid_and_address(step_context):
    payload = ContactsStep().transform(
        {
            "id": 3,
            "company_id": 2,
            "name": " ",
            "number": "+55 (11) 99999-0000",
            "pushname": "Ana",
            "kind": "Pessoa Jurídica",
            "street": "Rua A",
            "city": "  ",
            "state": "SP",
        },
        step_context(),
    )
    assert payload.values["phone_number"] == "5511999990000"
    assert payload.values["j_id"] == "5511999990000@s.whatsapp.net"
    assert payload.values["name"] == "Ana"
    assert payload.values["type"] == 2
    assert payload.values["address"] == "Rua A, SP"
    assert payload.values["is_wa_contact"] is True


def test_contact_helpers():
    assert digits_only("abc") is None
    assert digits_only("1" * 30) == "1" * 20
    assert build_jid("123", True) == "123@g.us"
    assert build_jid(None, False) is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("rgb(255, 0, 16)", "#ff0010"),
        ("RGB(300,1,2)", "#ff0102"),
        ("#AbC", "#aabbcc"),
        ("00FF00", "#00ff00"),
        ("blue", DEFAULT_COLOR),
        (None, DEFAULT_COLOR),
    ],
)
def test_normalize_color(raw, expected):
    assert normalize_color(raw) == expected


def test_quick_messages_and_settings(step_context):
    reply = QuickMessagesStep().transform({"id": 1, "company_id": 2, "messages": "not json"}, step_context())
    assert reply.values["messages"] == []
    assert reply.values["name"] == "Sem nome"

    setting = SettingsStep().transform({"id": 4, "company_id": 2, "key": " botName ", "value": "Polar"}, step_context())
    assert setting.old_id == "4"
    assert setting.values["key"] == "botName"
    assert "id" not in setting.values


def test_tenant_helpers():
    assert build_subdomain("Acme Corp") == "acme_corp"
    assert normalize_registry_number("11.222.333/0001-81") == "11222333000181"
    assert normalize_registry_number("n/a") is None
    assert normalize_registry_number(None) is None
