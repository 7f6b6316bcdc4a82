"""
Destination tables of the order-management schema.

The engine never reads these through the ORM; they exist so development
databases can be created with ``scripts/init_db.py`` and so the column
layout lives next to the engine's own tables.
"""

from sqlalchemy import (
    Column, Integer, Text, Date, Float, REAL,
    ForeignKey, ForeignKeyConstraint, PrimaryKeyConstraint,
)
from models.base import Base


class Kunde(Base):
    __tablename__ = "kunde"

    kundenr = Column(Text, primary_key=True)
    kundenavn = Column(Text)


class Firma(Base):
    __tablename__ = "firma"

    firmaid = Column(Integer, primary_key=True, autoincrement=False)
    firmanavn = Column(Text)


class Lager(Base):
    __tablename__ = "lager"

    lagernavn = Column(Text)
    firmaid = Column(Integer, ForeignKey("firma.firmaid"))

    __table_args__ = (PrimaryKeyConstraint("lagernavn", "firmaid"),)


class Valuta(Base):
    __tablename__ = "valuta"

    valutaid = Column(Text, primary_key=True)


class Vare(Base):
    __tablename__ = "vare"

    varekode = Column(Text, primary_key=True)
    varenavn = Column(Text)
    varegruppe = Column(Text)


class Ordre(Base):
    __tablename__ = "ordre"

    ordrenr = Column(Integer, primary_key=True, autoincrement=False)
    dato = Column(Date)
    kundenr = Column(Text, ForeignKey("kunde.kundenr"))
    kundeordreref = Column(Text)
    kunderef = Column(Text)
    firmaid = Column(Integer, ForeignKey("firma.firmaid"))
    lagernavn = Column(Text)
    valutaid = Column(Text, ForeignKey("valuta.valutaid"))
    sum = Column(Float)

    __table_args__ = (
        ForeignKeyConstraint(["lagernavn", "firmaid"], ["lager.lagernavn", "lager.firmaid"]),
    )


class Ordrelinje(Base):
    __tablename__ = "ordrelinje"

    linjenr = Column(Integer)
    ordrenr = Column(Integer, ForeignKey("ordre.ordrenr"))
    varekode = Column(Text, ForeignKey("vare.varekode"))
    antall = Column(REAL)
    enhet = Column(Text)
    nettpris = Column(Float)
    linjesum = Column(Float)
    linjestatus = Column(Integer)

    __table_args__ = (PrimaryKeyConstraint("linjenr", "ordrenr"),)


class OrdreHenvisning(Base):
    __tablename__ = "ordre_henvisning"

    ordrenr = Column(Integer)
    linjenr = Column(Integer)
    henvisning1 = Column(Text)
    henvisning2 = Column(Text)
    henvisning3 = Column(Text)
    henvisning4 = Column(Text)
    henvisning5 = Column(Text)

    __table_args__ = (
        PrimaryKeyConstraint("ordrenr", "linjenr"),
        ForeignKeyConstraint(
            ["ordrenr", "linjenr"], ["ordrelinje.ordrenr", "ordrelinje.linjenr"]
        ),
    )
