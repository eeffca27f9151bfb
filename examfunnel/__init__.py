"""
examfunnel - adaptive question funnel.

Builds batches of exam questions targeted at a learner's weakest and
least-tested concepts, sourced from curated, cached and generated banks,
deduplicated against everything the learner has seen and answer-key
validated before display.
"""

__version__ = "0.1.0"
