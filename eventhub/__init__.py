"""
Event Hub - API for live music events

Responsibilities:
- Per-event feature modules (enable, configure, reset)
- Song request queue with admission control
- Team formation by invite code
- Competitions: registration, brackets, results, ranking
- Activity feed per event
"""
