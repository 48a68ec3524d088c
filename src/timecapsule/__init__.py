"""
TimeCapsule - Seal messages and files until a chosen moment in the future.

TimeCapsule keeps capsule content hidden from everyone but the owner until
the unlock time has passed. It provides:
- Three privacy tiers (private, recipients, public) with existence masking
- Lifecycle states (scheduled, revealed, cancelled) with an audit trail
- Attachment storage with checksums and all-or-nothing uploads
- A command-line interface over the same service

Example usage:
    $ timecapsule create "Letter to 2035" -u alice -t 2035-01-01T00:00:00Z -m "Hi"
    $ timecapsule show <capsule_id> -u alice
    $ timecapsule shared -u bob -e bob@example.com
"""

__version__ = "0.1.0"
__author__ = "TimeCapsule Contributors"

__all__ = [
    "__version__",
    "__author__",
]
