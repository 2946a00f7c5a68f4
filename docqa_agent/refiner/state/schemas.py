import operator
from datetime import datetime
from typing import Any, List, Optional, Annotated

from typing_extensions import TypedDict


class RefinementGraphState(TypedDict):
    """
    Represents the state of one refinement run over one execution context.
    """
    context: Any
    description: str
    document: str
    rough_steps: List[Any]
    # Collaborators owned by this run
    agent: Any
    credential_manager: Any
    # To manage the loop
    current_index: int
    completed_steps: Annotated[list, operator.add]
    step_reports: Annotated[list, operator.add]
    interventions: Annotated[list, operator.add]
    aborted: bool
    abort_reason: Optional[str]
    # Results
    credentials: Optional[Any]
    final_steps: Optional[List[Any]]
    started_at: datetime
    metadata: Optional[Any]
    test: Optional[Any]
