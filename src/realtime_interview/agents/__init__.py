"""
Agents module containing the two interview models.

The turn controller decides what happens after each candidate turn; the
interviewer phrases what is actually said.
"""

from realtime_interview.agents.interviewer import Interviewer
from realtime_interview.agents.turn_controller import TurnContext, TurnController, TurnControllerBase

__all__ = [
    "Interviewer",
    "TurnContext",
    "TurnController",
    "TurnControllerBase",
]
