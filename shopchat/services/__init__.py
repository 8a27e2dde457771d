from shopchat.services.coordinator import Coordinator, build_coordinator
from shopchat.services.dispatch_service import (
    AdmissionLimiter,
    BoundedDispatcher,
    DispatchAction,
    DispatchRequest,
    DispatchResponse,
    decide,
)
from shopchat.services.fragment_service import FragmentAggregator
from shopchat.services.intent_service import IntentCarryOverStore, detect_sub_topic
from shopchat.services.state_machine import (
    InvalidTransitionError,
    TakeoverState,
    can_transition,
    transition,
)
from shopchat.services.takeover_service import TakeoverGate
from shopchat.services.turn_service import TurnOrchestrator, TurnOutcome
