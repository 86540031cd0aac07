from .user import User
from .skill_test import SkillTestTemplate, SkillTestQuestion, SkillTestAttempt
from .assignment import Assignment
from .status_history import StatusHistory
from .application import Application
from .escrow import EscrowPayment
from .milestone import Milestone
from .dispute import Dispute, DisputeEvent
from .review import Review, ReviewHelpfulVote
from .webhook import WebhookEvent
from .outbox import DomainEvent
