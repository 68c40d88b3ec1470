"""Models — enums and pydantic schemas. ProposalState lives in models.state."""
