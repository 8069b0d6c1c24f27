import asyncio
import os

from hybrid_sync import EngineSettings, create_engine

REMOTE_URL = os.environ.get("HYBRID_SYNC_REMOTE_URL", "http://localhost:8000/rest/v1")
AUTH_TOKEN = os.environ.get("HYBRID_SYNC_AUTH_TOKEN")


async def run_example():
    db_path = "example_basic.db"
    if os.path.exists(db_path):
        os.remove(db_path)

    print("--- Hybrid Sync: Basic Example ---")

    # 1. Build the engine over a local SQLite store
    settings = EngineSettings(remote_url=REMOTE_URL, store_path=db_path, debounce_seconds=0.5)
    engine = create_engine(settings=settings, token_provider=lambda: AUTH_TOKEN)
    engine.subscribe("studyflow-notes", lambda key, notes: print(f"  {key} now holds {len(notes or [])} note(s)"))

    # 2. Sign in: pull and merge whatever the remote already has
    await engine.initialize_for_principal("demo-user")
    print(f"Status after sign-in: {engine.get_status()}")

    # 3. Write locally; the push happens in the background
    notes = engine.load("studyflow-notes")
    notes.append({
        "local_id": engine.new_local_id("studyflow-notes"),
        "title": "Build a local-first app",
        "content": "Writes land locally first and sync later.",
    })
    engine.save("studyflow-notes", notes)
    print(f"Saved locally; pending collections: {engine.get_status().pending_count}")

    # 4. Give the debounce timer a chance to flush
    await asyncio.sleep(1.0)
    status = engine.get_status()
    print(f"State: {status.state.value}, pending: {status.pending_count}, last error: {status.last_error}")

    await engine.shutdown()
    print("\nExample finished. Local data saved to", db_path)


if __name__ == "__main__":
    asyncio.run(run_example())
