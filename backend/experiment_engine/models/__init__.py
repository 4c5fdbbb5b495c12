# This file makes the 'models' directory a Python package.

from .experiment import ExperimentRecord
from .survey import SurveyRecord
from .scenario import ScenarioRecord
from .wallet import WalletRecord, ParticipantWallet
from .participant_progress import ParticipantProgress
from .transaction import Transaction
from .survey_response import SurveyResponse
from .price_log import PriceLog
