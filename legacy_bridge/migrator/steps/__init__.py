"""
Entity steps, in the order the pipeline runs them.

Each later step relies on rows written by earlier ones (companies before
users, tickets before messages), so the order is part of the contract.
"""

from .campaigns import CampaignContactsStep, CampaignsStep
from .catalog import QuickMessagesStep, SettingsStep, TagsStep
from .channels import ChannelsStep
from .contacts import ContactsStep
from .departments import DepartmentsStep
from .flows import FlowsStep
from .messages import InternalMessagesStep, MessagesStep
from .permissions import PermissionsStep
from .tasks import TasksStep, TaskTypesStep
from .tenants import TenantsStep
from .tickets import TicketsStep
from .users import UsersStep

ORDERED_STEPS = (
    TenantsStep,
    DepartmentsStep,
    UsersStep,
    PermissionsStep,
    TaskTypesStep,
    TasksStep,
    TagsStep,
    QuickMessagesStep,
    FlowsStep,
    ChannelsStep,
    CampaignsStep,
    ContactsStep,
    CampaignContactsStep,
    SettingsStep,
    TicketsStep,
    MessagesStep,
    InternalMessagesStep,
)

__all__ = ["ORDERED_STEPS"] + [step.__name__ for step in ORDERED_STEPS]
