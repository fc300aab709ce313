"""Event bus and the base service every source builds on."""
