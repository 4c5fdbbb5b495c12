from .crud_experiment import experiment, survey
from .crud_scenario import scenario, wallet, participant_wallet
from .crud_progress import progress
from .crud_transaction import transaction, price_log
from .crud_survey_response import survey_response
