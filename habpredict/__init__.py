"""
HABPREDICT
==========

High-altitude balloon flight prediction and live flight comparison.

Classes
-------------------
LaunchParameters    Launch position, time, rates and burst altitude
Balloon             Represents balloon state (position, altitude, elapsed time)
Simulator           Fixed-step ascent/burst/descent integrator
Trajectory          Container for trajectory points
PredictionResult    Simulated path with launch, burst and landing points

Modules
-------------------
performance         Closed-form ascent rate / burst altitude calculator
live                Flight phase detection and live comparison against a prediction
"""

from .classes import *
