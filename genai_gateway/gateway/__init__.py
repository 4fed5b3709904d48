"""Multi-vendor generation gateway.

Takes a canonical chat or image request from the HTTP layer and drives it
to a single vendor:
  - Request Validator (schema checks, normalization, defaults)
  - Sliding-window Rate Limiter (per client key, per endpoint)
  - Vendor-Specific Adapters (OpenAI, Gemini, Anthropic, Azure OpenAI)
  - Stream Decoders (vendor wire chunks to canonical chat events)
  - Generation Orchestrator (staged request lifecycle, error mapping)
"""
