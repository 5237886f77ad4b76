"""Agent composition root and daily job scheduling."""
