"""
launchpad: submit a repository, get back a running container.
"""
VERSION = "1.0.0"
