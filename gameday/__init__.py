"""
Game Service - pickup game scheduling and registration

Responsibilities:
- Game lifecycle (draft, open, closed, in progress, completed, cancelled)
- Public registration through share links, with waitlist and promotion
- Team assignment and result recording
- Notification intents (outbox) and audit trail
- Real-time lifecycle events over Redis pub/sub
"""
