"""Filesystem-agnostic domain model.

- ``hrid``: human-readable identifiers
- ``fingerprint``: content digests for change detection
- ``requirement``: Requirement and ParentLink records
- ``tree``: the requirement graph (acyclicity, uniqueness, staleness)
"""
