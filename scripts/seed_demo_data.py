#!/usr/bin/env python
import asyncio
import random

from faker import Faker

from leadmagnet.db import init_db
from leadmagnet.orchestrator import AssessmentOrchestrator
from leadmagnet.scoring.question_bank import available_variants, load_bank


def fake_identifying_fields(fake: Faker, variant: str) -> dict:
    bank = load_bank(variant)
    fields = {}
    for item in bank.identifying_fields:
        if item.options:
            fields[item.id] = random.choice(item.options)
        elif item.id == bank.name_field:
            fields[item.id] = fake.company()
        elif item.id == bank.market_field:
            fields[item.id] = fake.city()
        else:
            fields[item.id] = str(random.randint(1, 12))
    return fields


def fake_responses(variant: str) -> dict:
    # skip a few questions so partial submissions show up too
    return {
        question.id: random.choice(question.options).label
        for question in load_bank(variant).questions
        if random.random() > 0.1
    }


async def seed_assessment(fake: Faker, orchestrator: AssessmentOrchestrator, variant: str) -> None:
    result = await orchestrator.submit(variant, fake_identifying_fields(fake, variant), fake_responses(variant))
    if random.random() < 0.4:
        await orchestrator.capture_email(result["shareable_token"], fake.email())


async def main(total: int = 20) -> None:
    await init_db()
    fake = Faker()
    orchestrator = AssessmentOrchestrator()
    variants = available_variants()
    for _ in range(total):
        await seed_assessment(fake, orchestrator, random.choice(variants))
    print(f"Seeded {total} demo assessments across {', '.join(variants)}.")


if __name__ == "__main__":
    asyncio.run(main())
