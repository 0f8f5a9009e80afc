"""Output tunnel between nested planexec processes and the headless relay to the monitor."""
