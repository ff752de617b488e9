"""
Political campaign simulator.

A game clock with a due-event queue drives per-player campaign cycles
through their phases, generates opinion polls along the way and resolves
each cycle into a state-by-state electoral-college result.
"""

__version__ = "1.0.0"
