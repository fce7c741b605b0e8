"""
Context Lattice Console Demo

Chat with a session whose context window is kept under budget by the
ContextWindowManager. Every turn is added to the window; the assistant
reply comes from the configured LLM (or an echo when OPENAI_API_KEY is unset).

Commands:
    stats              layer usage and utilization
    context            prompt-ready formatted context
    compress [name]    force a compression run (optionally with a strategy)
    remember <fact>    add a persistent fact
    summary            structured summary of the conversation
    export             print the session as JSON
    exit / quit        flush and leave
"""

import asyncio
import sys

from context_lattice import ComponentFactory, ContextConfig


def print_stats(manager):
    stats = manager.get_context_stats()
    analysis = manager.analyze_context()
    print(f"\n📊 {stats['total_tokens']}/{stats['max_tokens']} tokens ({analysis.context_utilization:.1f}%)")
    for name, layer in stats["layers"].items():
        print(f"   {name:<11} {layer['entries']:>3} entries  {layer['tokens']:>5}/{layer['budget']} tokens")
    if stats["last_compression"]:
        print(f"   last compression: {stats['last_compression']}")
    if stats["background_errors"]:
        print(f"   ⚠️  {stats['background_errors']} background errors")


async def reply_to(manager, llm) -> str:
    if llm is None:
        last = manager.get_recent_messages(1)[0]
        return f"(echo) {last.content}"

    messages = [{"role": "system", "content": manager.get_formatted_context()}]
    messages += [
        {"role": m.role.value, "content": m.content}
        for m in manager.get_messages()
        if not m.is_summary
    ][-10:]
    return await llm.complete(messages, temperature=0.7, max_tokens=400)


async def main(session_id: str = "console"):
    """Interactive console for one context window session."""
    print("🏗️  Initializing Context Lattice...")
    config = ContextConfig.from_env()
    components = ComponentFactory.create_all_components(config)
    manager = await components.registry.get_or_create(session_id)

    print("\n📋 Context Lattice Interactive Session")
    print("=" * 50)
    print(f"💬 Session '{session_id}' ({len(manager.get_messages())} stored entries)")
    print("=" * 50)
    print("Type a message, or 'stats', 'context', 'compress', 'remember <fact>', 'summary', 'export', 'exit'.")

    loop = asyncio.get_running_loop()
    while True:
        try:
            # Keep the event loop free for background persistence while waiting for input
            user_query = (await loop.run_in_executor(None, input, "\nYou: ")).strip()
            if not user_query:
                continue
            command = user_query.lower()

            if command in ['exit', 'quit']:
                print_stats(manager)
                await components.registry.close()
                print("\n✅ Session complete. Context saved.")
                break

            if command == 'stats':
                print_stats(manager)
                continue

            if command == 'context':
                print(manager.get_formatted_context() or "(empty)")
                continue

            if command.startswith('compress'):
                parts = user_query.split(maxsplit=1)
                result = await manager.compress(parts[1] if len(parts) > 1 else None)
                print(
                    f"🗜️  {result.strategy.value}: {result.original_tokens} → {result.compressed_tokens} tokens"
                    f"{' (fallback)' if result.used_fallback else ''}"
                )
                continue

            if command.startswith('remember '):
                manager.add_persistent(user_query[len('remember '):].strip(), priority=1.0)
                print("📌 Stored as persistent context.")
                continue

            if command == 'summary':
                summary = await manager.generate_summary()
                print(f"Topics:   {', '.join(summary.main_topics) or '-'}")
                print(f"Entities: {', '.join(summary.key_entities) or '-'}")
                print(f"Flow:     {summary.conversation_flow}")
                for fact in summary.important_facts:
                    print(f"  • {fact}")
                continue

            if command == 'export':
                print(manager.export_context())
                continue

            await manager.add_message("user", user_query)
            response = await reply_to(manager, components.llm)
            await manager.add_message("assistant", response)
            print(f"\nAssistant: {response}")

        except KeyboardInterrupt:
            print("\n⚠️ Process interrupted by user. Exiting.")
            await components.registry.close()
            break
        except Exception as e:
            print(f"\n❌ An error occurred: {e}")


if __name__ == "__main__":
    try:
        asyncio.run(main(*sys.argv[1:2]))
    except KeyboardInterrupt:
        print("\n⚠️ Process interrupted by user")
