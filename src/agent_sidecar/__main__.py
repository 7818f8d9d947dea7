from agent_sidecar.main import main_entry

raise SystemExit(main_entry())
