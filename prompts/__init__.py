"""Provide prompt rendering for the chapter pipeline.

Templates live under this directory as `prompts/<agent_name>/*.j2`, with an
optional `prompts/<agent_name>/system.md` per agent:

- `chapter_writer/`: drafting, continuity repair and branch iteration.
- `chapter_extractor/`: post-generation summary, hook and entity extraction.
"""
