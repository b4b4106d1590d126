"""appily-agent: runs coding agents inside sandboxes and streams their events.

The controller (appily_agent.controller) launches a per-backend driver
(appily_agent.drivers) in the sandbox; the driver runs TurnPipeline, which
writes canonical events to Supabase and fires the post-turn side effects.
"""
