from .committee import Committee
from .approval import ApprovalRequest, Vote, ApprovalStatus, VoteDecision, ApprovalPattern, Timepoint

__all__ = ['Committee', 'ApprovalRequest', 'Vote', 'ApprovalStatus', 'VoteDecision', 'ApprovalPattern', 'Timepoint']
