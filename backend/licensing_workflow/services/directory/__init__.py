from .reviewer_directory import ReviewerDirectory, SqlReviewerDirectory

__all__ = ['ReviewerDirectory', 'SqlReviewerDirectory']
