"""
                        Services Module

Contains the components of the notification pipeline. Services that talk
to the outside world (data service, audio) have Mock (development) and Real
(staging/production) implementations selected by ENV_MODE.

Services:
    - identity: anonymous client identifier
    - mirror: local order/notification mirror with idempotent merges
    - reconciliation: which orders belong to the viewer
    - data: hosted data service (queries, mutations, change feed)
    - feed: change feed subscriber with polling safety net
    - alerts: alert state machine, audio and delivery engine
    - background: background delivery agent and its message protocol
    - acknowledgement: mark-read / toggle-sound operations
"""
