from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from leadops.sequences.models import FollowUpSequence, FollowUpStep


logger = logging.getLogger("leadops.sequences")


DEFAULT_SEQUENCES: list[dict] = [
    {
        "id": uuid.UUID("a0000000-0000-0000-0000-000000000001"),
        "name": "Cliente Final - Padrao",
        "funnel": "end_client",
        "steps": [
            (
                60,
                "Ola {{ name }}! Aqui e a Parket. Recebemos seu contato e ficamos felizes com seu interesse. "
                "Um de nossos consultores vai entrar em contato em breve para entender melhor seu projeto. "
                "Enquanto isso, tem alguma duvida que possamos ajudar?",
            ),
            (
                1440,
                "Ola {{ name }}, tudo bem? Aqui e a Parket. Gostavamos de saber mais sobre seu projeto"
                "{% if location %} em {{ location }}{% endif %}. Podemos agendar uma conversa rapida para "
                "entender suas necessidades e apresentar as melhores opcoes? Qual o melhor horario para voce?",
            ),
            (
                4320,
                "{{ name }}, sabemos que escolher o piso perfeito e uma decisao importante. Na Parket, oferecemos "
                "consultoria tecnica gratuita para garantir o melhor resultado para seu projeto. Posso agendar "
                "uma visita ao nosso showroom ou uma videochamada?",
            ),
            (
                10080,
                "Ola {{ name }}! Passando para lembrar que a Parket esta a disposicao para seu projeto. "
                "Temos condicoes especiais este mes. Gostaria de saber mais?",
            ),
        ],
    },
    {
        "id": uuid.UUID("a0000000-0000-0000-0000-000000000002"),
        "name": "Arquitetos - Relacionamento",
        "funnel": "architects",
        "steps": [
            (
                30,
                "Ola {{ name }}! Aqui e a Parket. Recebemos seu contato e ficamos muito felizes. Somos "
                "especializados em pisos de madeira de alto padrao e trabalhamos com diversos escritorios de "
                "arquitetura. Posso enviar nosso portfolio tecnico?",
            ),
            (
                2880,
                "{{ name }}, gostaria de apresentar nossos diferenciais tecnicos para especificacao: biblioteca "
                "3D/BIM, amostras premium e suporte tecnico dedicado. Podemos agendar uma apresentacao no seu "
                "escritorio ou via video?",
            ),
            (
                10080,
                "Ola {{ name }}! A Parket esta preparando um evento exclusivo para arquitetos parceiros. "
                "Gostaria de receber o convite? Tambem posso enviar amostras dos nossos lancamentos.",
            ),
        ],
    },
    {
        "id": uuid.UUID("a0000000-0000-0000-0000-000000000003"),
        "name": "Incorporadores - B2B",
        "funnel": "developers",
        "steps": [
            (
                60,
                "Ola {{ name }}! Aqui e a Parket. Somos referencia em pisos de madeira para empreendimentos de "
                "alto padrao{% if project_type %} ({{ project_type }}){% endif %}. Trabalhamos com as principais "
                "incorporadoras do Brasil. Posso enviar cases e condicoes para volume?",
            ),
            (
                4320,
                "{{ name }}, a Parket oferece condicoes especiais para incorporadoras: pricing por volume, "
                "cronograma de entregas flexivel e suporte tecnico na obra. Gostaria de agendar uma reuniao "
                "para discutir seu empreendimento?",
            ),
        ],
    },
]


def seed_default_sequences(session: Session) -> int:
    """Insert the per-funnel default sequences that are not present yet."""
    created = 0
    for definition in DEFAULT_SEQUENCES:
        exists = session.scalar(select(FollowUpSequence.id).where(FollowUpSequence.id == definition["id"]))
        if exists is not None:
            continue

        sequence = FollowUpSequence(id=definition["id"], name=definition["name"], funnel=definition["funnel"])
        session.add(sequence)
        for order, (delay_minutes, template) in enumerate(definition["steps"], start=1):
            session.add(
                FollowUpStep(
                    sequence_id=sequence.id,
                    step_order=order,
                    delay_minutes=delay_minutes,
                    channel="whatsapp",
                    template=template,
                )
            )
        created += 1

    session.commit()
    if created:
        logger.info("sequence.seeded", extra={"count": created})
    return created
