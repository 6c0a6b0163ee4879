"""Client-side authentication library.

State machines for phone verification and the credential auth flow, the
sliding-window rate limiter and the challenge-verifier providers. They run
against an injected identity provider and the identity hub HTTP API.
"""
