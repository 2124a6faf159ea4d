"""
Hospital Agents

Microservices of the hospital operations platform. Each agent lives in its
own subpackage with its own configuration, API and tests.
"""
