"""kaldiflow: batch transcription driver around Kaldi, LIUM and SCTK."""

__version__ = "0.1.0"
