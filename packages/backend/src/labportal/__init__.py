"""LabPortal — session & live-data core for the lab administration portal.

The layer the portal UI sits on: who is signed in, which clinic and role
their profile carries, and in-memory views of clinics, patients and reports
kept in step with the hosted database as it pushes row changes.
"""

__version__ = "0.1.0"
