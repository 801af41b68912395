from eventsync.worker.main import run

run()
