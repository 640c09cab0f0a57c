"""End-to-end scenario tests for the consent lifecycle service.

Each scenario drives the FastAPI application the way an integrating system
and a consenting subject would, and checks the observable results: HTTP
responses, the durable store, and the webhooks received.
"""
