"""Frontends - User interfaces for tether.

Submodules:
    cli/    Command-line interface (classify, chat, run, sessions)
"""
