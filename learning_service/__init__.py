"""
learning_service
================

Online learning loop.  Closed trades come in; new ensemble weights,
confidence threshold, trailing statistics, risk counters and learning
phase go out, each as one atomic table swap.

Modules
-------
feedback.py  → outcome queue consumer + pure update rules
phases.py    → DISCOVERY … PRODUCTION milestone state machine
"""
