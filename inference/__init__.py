"""
Inference module.
Forwards ambiguous references and undocumented declarations to an external
inference collaborator and merges its answers into the graph.
"""

from .collaborator import (AmbiguityCluster, InferenceBatch, InferenceCandidate,
                           InferenceCollaborator, InferenceError, InferenceTimeout,
                           InferenceUnavailable, LLMInferenceCollaborator, PurposeQuery)
from .gateway import InferenceGateway, InferenceOutcome

__all__ = ['AmbiguityCluster', 'InferenceBatch', 'InferenceCandidate', 'InferenceCollaborator',
           'InferenceError', 'InferenceTimeout', 'InferenceUnavailable',
           'LLMInferenceCollaborator', 'PurposeQuery', 'InferenceGateway', 'InferenceOutcome']
