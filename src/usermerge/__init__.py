"""usermerge: consolidate two user records across a relational schema."""

__version__ = "0.1.0"
